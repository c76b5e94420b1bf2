"""shiftsync: sync weekly schedule shifts from an IMAP inbox to Google Calendar."""

__version__ = "0.1.0"
