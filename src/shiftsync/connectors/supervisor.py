"""Reconnect supervisor: keeps one mailbox connection alive and dispatches new mail.

State machine::

    DISCONNECTED -> CONNECTING -> WATCHING -> CLOSED | ERRORED -> DISCONNECTED
                                     \\-> SHUTTING_DOWN -> STOPPED

New mail is found by one routine, ``gap_check()``, whether the trigger is a
reconnect or a live change notification. It compares the ingestion cursor
with the mailbox tip, fetches everything past the cursor, dispatches the
messages one at a time and only then advances the cursor. A failure while
dispatching one message is logged and does not stop the batch; the cursor
still moves past it. A transport failure while fetching the batch leaves the
cursor where it was, so the next gap-check fetches the same range again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

from shiftsync.connectors.cursor import CursorStore, IngestionCursor
from shiftsync.connectors.imap import ImapMailbox, MessageMetadata, TransportError
from shiftsync.connectors.metrics import WatcherMetrics, get_error_type

logger = logging.getLogger(__name__)

Dispatcher = Callable[[ImapMailbox, MessageMetadata], Awaitable[Any]]

DEFAULT_RECONNECT_BACKOFF_S = 5.0
DEFAULT_LOGOUT_TIMEOUT_S = 1.0
DEFAULT_POLL_INTERVAL_S = 30.0


class SupervisorState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    WATCHING = "watching"
    CLOSED = "closed"
    ERRORED = "errored"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ReconnectSupervisor:
    """Owns the ingestion cursor and the mailbox connection lifecycle."""

    def __init__(
        self,
        mailbox_factory: Callable[[], ImapMailbox],
        dispatcher: Dispatcher,
        cursor_store: CursorStore,
        *,
        reconnect_backoff_s: float = DEFAULT_RECONNECT_BACKOFF_S,
        logout_timeout_s: float = DEFAULT_LOGOUT_TIMEOUT_S,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        metrics: WatcherMetrics | None = None,
    ) -> None:
        self._mailbox_factory = mailbox_factory
        self._dispatcher = dispatcher
        self._store = cursor_store
        self._reconnect_backoff_s = reconnect_backoff_s
        self._logout_timeout_s = logout_timeout_s
        self._poll_interval_s = poll_interval_s
        self._metrics = metrics

        self._state = SupervisorState.DISCONNECTED
        self._shutdown = asyncio.Event()
        self._dispatch_lock = asyncio.Lock()
        self._mailbox: ImapMailbox | None = None
        self._caught_up = False

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def cursor(self) -> IngestionCursor | None:
        return self._store.cursor

    def _set_state(self, state: SupervisorState) -> None:
        if self._shutdown.is_set() and state not in (
            SupervisorState.SHUTTING_DOWN,
            SupervisorState.STOPPED,
        ):
            return
        if state != self._state:
            logger.debug("Supervisor state %s -> %s", self._state, state)
            self._state = state

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Stop watching; interrupts a pending reconnect backoff."""
        if self._shutdown.is_set():
            return
        logger.info("Shutting down...")
        self._set_state(SupervisorState.SHUTTING_DOWN)
        self._shutdown.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_shutdown)

    async def _close(self, mailbox: ImapMailbox) -> None:
        """Log out within the timeout, otherwise drop the socket."""
        try:
            await asyncio.wait_for(mailbox.logout(), timeout=self._logout_timeout_s)
        except TimeoutError:
            logger.warning("Logout did not finish within %.1fs, aborting", self._logout_timeout_s)
            mailbox.abort()
        except TransportError as exc:
            logger.debug("Logout failed: %s", exc)
            mailbox.abort()

    async def _sleep_backoff(self) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown.wait(), timeout=self._reconnect_backoff_s)

    # ------------------------------------------------------------------
    # Gap check
    # ------------------------------------------------------------------

    async def gap_check(self, mailbox: ImapMailbox) -> int:
        """Dispatch every message past the cursor, then advance it.

        Returns the number of messages dispatched.
        """
        async with self._dispatch_lock:
            kind = self._store.kind
            tip = await mailbox.current_tip(kind)
            cursor = self._store.cursor
            if cursor is None:
                initial = IngestionCursor(kind=kind, value=tip, last_uid=mailbox.last_uid)
                self._record_cursor(self._store.reset(initial, mailbox.uid_validity))
                logger.info("Initialized cursor at %s=%d", kind, tip)
                return 0

            logger.info("Gap check: cursor %s=%d, mailbox tip %d", kind, cursor.value, tip)
            if not cursor.is_behind(tip):
                logger.info("No new messages found")
                return 0

            messages = await mailbox.fetch_metadata_since(cursor)
            logger.info("%d new message(s) found", len(messages))

            for message in messages:
                await self._dispatch_one(mailbox, message)

            high_water = max([tip, *(m.position for m in messages)])
            last_uid = max([mailbox.last_uid, *(m.uid for m in messages)])
            advanced = self._store.commit(
                cursor.advance(high_water, last_uid), mailbox.uid_validity
            )
            self._record_cursor(advanced)
            return len(messages)

    async def _dispatch_one(self, mailbox: ImapMailbox, message: MessageMetadata) -> None:
        logger.info("New email: %r (uid=%d)", message.subject, message.uid)
        try:
            result = await self._dispatcher(mailbox, message)
        except Exception as exc:
            logger.exception("Error while handling message uid=%d: %s", message.uid, exc)
            if self._metrics is not None:
                self._metrics.record_dispatch("error")
                self._metrics.record_error(get_error_type(exc), "dispatch")
            return
        if self._metrics is not None:
            self._metrics.record_dispatch(str(result))

    def _record_cursor(self, cursor: IngestionCursor) -> None:
        if self._metrics is not None:
            self._metrics.set_cursor(cursor.kind, cursor.value)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _connect(self) -> ImapMailbox | None:
        """Connect, retrying forever until success or shutdown."""
        while not self._shutdown.is_set():
            self._set_state(SupervisorState.CONNECTING)
            logger.info("Attempting connection...")
            mailbox = self._mailbox_factory()
            try:
                connected = await self._until_shutdown(mailbox.connect())
            except TransportError as exc:
                logger.error("Reconnect failed: %s", exc)
                logger.info("Trying again in %.0f seconds...", self._reconnect_backoff_s)
                mailbox.abort()
                if self._metrics is not None:
                    self._metrics.record_connection_attempt("error")
                self._set_state(SupervisorState.DISCONNECTED)
                await self._sleep_backoff()
                continue
            if not connected:
                logger.info("Shutdown requested while connecting")
                mailbox.abort()
                return None
            if self._metrics is not None:
                self._metrics.record_connection_attempt("success")
            logger.info("IMAP connected")
            return mailbox
        return None

    async def _until_shutdown(self, operation: Awaitable[Any]) -> bool:
        """Await ``operation`` unless shutdown comes first.

        Returns ``False`` when shutdown won; the operation is then cancelled.
        """
        task = asyncio.ensure_future(operation)
        shutdown_task = asyncio.create_task(self._shutdown.wait())
        try:
            await asyncio.wait({task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            shutdown_task.cancel()
            if not task.done():
                task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if task.cancelled():
            return False
        task.result()
        return True

    async def _watch(self, mailbox: ImapMailbox) -> None:
        """Catch up once, then run a gap-check on every change notification."""
        self._store.load(uid_validity=mailbox.uid_validity)
        logger.info("Checking for new messages since last connection...")
        self._caught_up = False
        await self.gap_check(mailbox)
        self._caught_up = True
        while True:
            logger.info("Watching mailbox (%s=%d)...", self._store.kind, self._store.cursor.value)
            await mailbox.wait_for_change(self._poll_interval_s)
            await self.gap_check(mailbox)

    async def _watch_until_shutdown(self, mailbox: ImapMailbox) -> None:
        await self._until_shutdown(self._watch(mailbox))

    async def run(self) -> None:
        """Run until ``request_shutdown()``. Never gives up on reconnecting."""
        while not self._shutdown.is_set():
            mailbox = await self._connect()
            if mailbox is None:
                break
            self._mailbox = mailbox
            self._set_state(SupervisorState.WATCHING)
            try:
                await self._watch_until_shutdown(mailbox)
            except TransportError as exc:
                self._set_state(SupervisorState.CLOSED)
                logger.warning("IMAP closed (%s), reconnecting...", exc)
                if self._metrics is not None:
                    self._metrics.record_error(get_error_type(exc), "watch")
                mailbox.abort()
                if not self._caught_up:
                    # The catch-up itself failed; reconnecting at once would repeat it.
                    await self._sleep_backoff()
            except Exception as exc:
                self._set_state(SupervisorState.ERRORED)
                logger.exception("IMAP error: %s", exc)
                if self._metrics is not None:
                    self._metrics.record_error(get_error_type(exc), "watch")
                mailbox.abort()
                await self._sleep_backoff()
            else:
                self._set_state(SupervisorState.SHUTTING_DOWN)
                await self._close(mailbox)
            finally:
                self._mailbox = None
            if not self._shutdown.is_set():
                self._set_state(SupervisorState.DISCONNECTED)

        self._set_state(SupervisorState.STOPPED)
        logger.info("Supervisor stopped")
