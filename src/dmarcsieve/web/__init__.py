"""HTTP surface: health, scheduler status and manual triggers."""
