"""Pipeline stages: report parsing, assessment, notification."""
