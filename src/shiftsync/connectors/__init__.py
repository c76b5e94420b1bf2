"""Mailbox ingestion: IMAP client, cursor, reconnect supervisor and attachment selection."""
