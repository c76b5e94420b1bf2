"""Per-message dispatcher: sender filter, attachment, extraction, calendar sync."""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum

from shiftsync.calendar.sync import CalendarSync
from shiftsync.connectors.attachments import find_attachments, select_attachment
from shiftsync.connectors.imap import ImapMailbox, MessageMetadata
from shiftsync.connectors.metrics import WatcherMetrics
from shiftsync.schedule.document import decode_pdf
from shiftsync.schedule.extractor import extract_shifts_from_pages
from shiftsync.schedule.filename import parse_week_window
from shiftsync.schedule.models import ShiftRecord

logger = logging.getLogger(__name__)


class DispatchStatus(StrEnum):
    SYNCED = "synced"
    SKIPPED_SENDER = "skipped_sender"
    NO_ATTACHMENT = "no_attachment"
    NO_SHIFTS = "no_shifts"


def extract_from_pdf(data: bytes, filename: str, target_name: str) -> list[ShiftRecord]:
    """Decode a schedule PDF and extract the shifts of ``target_name``.

    Blocking; the watcher runs it in a worker thread.
    """
    return extract_shifts_from_pages(decode_pdf(data), filename, target_name)


class ShiftPipeline:
    """Handles one new message from the watched mailbox."""

    def __init__(
        self,
        *,
        target_sender: str,
        target_name: str,
        calendar: CalendarSync,
        debug_mode: bool = False,
        debug_sender: str | None = None,
        metrics: WatcherMetrics | None = None,
    ) -> None:
        self._senders = {target_sender.lower()}
        if debug_mode and debug_sender:
            self._senders.add(debug_sender.lower())
        self._target_name = target_name
        self._calendar = calendar
        self._metrics = metrics

    def accepts_sender(self, message: MessageMetadata) -> bool:
        return any(address in self._senders for address in message.from_addresses)

    async def handle(self, mailbox: ImapMailbox, message: MessageMetadata) -> DispatchStatus:
        if not self.accepts_sender(message):
            logger.info("Not the sender we're looking for: %s", ", ".join(message.from_addresses))
            return DispatchStatus.SKIPPED_SENDER
        logger.info("Sender correct!")

        attachment = None
        if message.body_structure is not None:
            attachment = select_attachment(find_attachments(message.body_structure))
        if attachment is None:
            logger.info("No attachments")
            return DispatchStatus.NO_ATTACHMENT
        logger.info("Attachment found: %s (part %s)", attachment.filename, attachment.part)

        data = await mailbox.download(message.uid, attachment.part, attachment.encoding)
        logger.info("Downloaded attachment (%d bytes)", len(data))

        shifts = await asyncio.to_thread(
            extract_from_pdf, data, attachment.filename, self._target_name
        )
        if self._metrics is not None:
            self._metrics.record_shifts(len(shifts))
        if not shifts:
            logger.info("No shifts found for %r", self._target_name)
            return DispatchStatus.NO_SHIFTS

        for shift in shifts:
            logger.info("Shift: %s %s - %s", shift.type, shift.start, shift.end)

        window = parse_week_window(attachment.filename)
        report = await self._calendar.sync(shifts, window)
        logger.info(
            "Calendar sync: %d created, %d deleted, %d failed",
            report.created,
            report.deleted,
            report.failed,
        )
        return DispatchStatus.SYNCED
