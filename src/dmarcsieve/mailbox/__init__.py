"""IMAP mailbox access and report intake."""
