"""IMAP mailbox client used by the reconnect supervisor.

Wraps stdlib ``imaplib``. Every blocking call runs in a worker thread via
``asyncio.to_thread`` and all commands on the connection are serialized by a
single ``asyncio.Lock``. Socket and protocol failures surface as
``TransportError``, which the supervisor treats as "connection closed".
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import email as email_lib
import imaplib
import logging
import quopri
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from email.utils import getaddresses
from typing import Any, TypeVar

from shiftsync.connectors.bodystructure import (
    FetchParseError,
    MimeNode,
    parse_bodystructure,
    parse_fetch_response,
    split_fetch_responses,
)
from shiftsync.connectors.cursor import CursorKind, IngestionCursor

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HEADER_FIELDS = "BODY.PEEK[HEADER.FIELDS (FROM SUBJECT DATE)]"
_STATUS_ITEM = {"count": "MESSAGES", "uid": "UIDNEXT", "modseq": "HIGHESTMODSEQ"}


class TransportError(Exception):
    """The mailbox connection failed or was closed."""


@dataclass
class MessageMetadata:
    """Envelope and structure of one message, enough to decide whether to download."""

    uid: int
    seq: int
    position: int
    subject: str = ""
    from_addresses: list[str] = field(default_factory=list)
    body_structure: MimeNode | None = None


@dataclass(frozen=True)
class ImapSettings:
    host: str
    port: int = 993
    username: str = ""
    password: str = ""
    mailbox: str = "INBOX"
    socket_timeout_s: float = 35.0
    use_tls: bool = True


def _quote_mailbox(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _decode_subject(value: str | None) -> str:
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError):
        return value


def decode_transfer_encoding(data: bytes, encoding: str | None) -> bytes:
    """Undo the content transfer encoding of a downloaded body section."""
    encoding = (encoding or "").lower()
    if encoding == "base64":
        try:
            return base64.b64decode(data)
        except binascii.Error as exc:
            raise TransportError(f"attachment is not valid base64: {exc}") from exc
    if encoding == "quoted-printable":
        return quopri.decodestring(data)
    return data


def _status_value(data: list[Any], item: str) -> int:
    for line in data:
        if isinstance(line, tuple):
            line = line[0]
        if not isinstance(line, bytes):
            continue
        match = re.search(rb"\b" + item.encode() + rb" (\d+)", line)
        if match is not None:
            return int(match.group(1))
    raise TransportError(f"STATUS response does not contain {item}: {data!r}")


def _header_value(attributes: dict[str, Any]) -> bytes:
    for key, value in attributes.items():
        if key.startswith("BODY[HEADER"):
            if isinstance(value, bytes):
                return value
            if isinstance(value, str):
                return value.encode()
    return b""


def _modseq_value(attributes: dict[str, Any]) -> int:
    value = attributes.get("MODSEQ")
    if isinstance(value, list) and value:
        value = value[0]
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise FetchParseError(f"FETCH response has no MODSEQ: {attributes!r}") from exc


def parse_message_metadata(
    seq: int,
    attributes: dict[str, Any],
    kind: CursorKind,
) -> MessageMetadata:
    """Build ``MessageMetadata`` from one parsed FETCH response."""
    try:
        uid = int(attributes["UID"])
    except (KeyError, TypeError, ValueError) as exc:
        raise FetchParseError(f"FETCH response has no UID: {attributes!r}") from exc

    headers = email_lib.message_from_bytes(_header_value(attributes))
    addresses = [
        address.lower()
        for _name, address in getaddresses(headers.get_all("From", []))
        if address
    ]

    body_structure = None
    structure = attributes.get("BODYSTRUCTURE")
    if structure is not None:
        try:
            body_structure = parse_bodystructure(structure)
        except FetchParseError as exc:
            logger.warning("UID %d has an unreadable BODYSTRUCTURE: %s", uid, exc)

    if kind == "count":
        position = seq
    elif kind == "uid":
        position = uid
    else:
        position = _modseq_value(attributes)

    return MessageMetadata(
        uid=uid,
        seq=seq,
        position=position,
        subject=_decode_subject(headers.get("Subject")),
        from_addresses=addresses,
        body_structure=body_structure,
    )


class ImapMailbox:
    """One authenticated connection to a single selected mailbox."""

    def __init__(
        self,
        settings: ImapSettings,
        connection_factory: Callable[[ImapSettings], imaplib.IMAP4] | None = None,
    ) -> None:
        self._settings = settings
        self._connection_factory = connection_factory or _open_connection
        self._conn: imaplib.IMAP4 | None = None
        self._lock = asyncio.Lock()
        self._exists = 0
        self._uid_validity: int | None = None
        self._last_uid = 0

    @property
    def identity(self) -> str:
        return f"{self._settings.username}@{self._settings.host}/{self._settings.mailbox}"

    @property
    def exists(self) -> int:
        """Message count reported by the server at the last SELECT or NOOP."""
        return self._exists

    @property
    def uid_validity(self) -> int | None:
        return self._uid_validity

    @property
    def last_uid(self) -> int:
        """Highest UID in the mailbox at the last ``current_tip()``."""
        return self._last_uid

    def lock(self) -> asyncio.Lock:
        """Return the lock that serializes commands on this connection."""
        return self._lock

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(func, *args)
            except (imaplib.IMAP4.error, OSError) as exc:
                raise TransportError(f"{type(exc).__name__}: {exc}") from exc

    def _require_conn(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise TransportError("mailbox is not connected")
        return self._conn

    # ------------------------------------------------------------------
    # Blocking helpers (run via asyncio.to_thread)
    # ------------------------------------------------------------------

    def _connect_blocking(self) -> None:
        conn = self._connection_factory(self._settings)
        self._conn = conn
        conn.login(self._settings.username, self._settings.password)
        typ, data = conn.select(_quote_mailbox(self._settings.mailbox), readonly=True)
        if typ != "OK":
            raise TransportError(f"SELECT {self._settings.mailbox} failed: {data!r}")
        self._exists = int(data[0]) if data and data[0] else 0
        _typ, validity = conn.response("UIDVALIDITY")
        if validity and validity[0]:
            self._uid_validity = int(validity[0])

    def _status_blocking(self, items: tuple[str, ...]) -> dict[str, int]:
        conn = self._require_conn()
        typ, data = conn.status(_quote_mailbox(self._settings.mailbox), f"({' '.join(items)})")
        if typ != "OK":
            raise TransportError(f"STATUS {' '.join(items)} failed: {data!r}")
        return {item: _status_value(data, item) for item in items}

    def _fetch_blocking(self, cursor: IngestionCursor) -> list[MessageMetadata]:
        conn = self._require_conn()
        items = f"(UID BODYSTRUCTURE {_HEADER_FIELDS})"
        if cursor.kind == "count":
            typ, data = conn.fetch(f"{cursor.value + 1}:*", items)
        elif cursor.kind == "uid":
            typ, data = conn.uid("FETCH", f"{cursor.value + 1}:*", items)
        else:
            typ, found = conn.uid(
                "SEARCH", None, f"UID {cursor.last_uid + 1}:*", f"MODSEQ {cursor.value + 1}"
            )
            if typ != "OK":
                raise TransportError(f"SEARCH MODSEQ failed: {found!r}")
            uids = found[0].split() if found and found[0] else []
            if not uids:
                return []
            uid_set = b",".join(uids).decode()
            typ, data = conn.uid("FETCH", uid_set, f"(UID MODSEQ BODYSTRUCTURE {_HEADER_FIELDS})")
        if typ != "OK":
            raise TransportError(f"FETCH failed: {data!r}")

        messages: list[MessageMetadata] = []
        for segments in split_fetch_responses(data):
            try:
                seq, attributes = parse_fetch_response(segments)
                if "UID" not in attributes:
                    # Unsolicited FETCH (flag update) mixed into the response.
                    continue
                messages.append(parse_message_metadata(seq, attributes, cursor.kind))
            except FetchParseError as exc:
                logger.warning("Skipping unparseable FETCH response: %s", exc)

        # "n:*" always matches the last message, even when n is past the end.
        fresh = [m for m in messages if m.position > cursor.value]
        if cursor.kind == "modseq":
            # MODSEQ also moves on flag changes of messages already dispatched.
            fresh = [m for m in fresh if m.uid > cursor.last_uid]
        fresh.sort(key=lambda m: m.position)
        return fresh

    def _download_blocking(self, uid: int, part: str) -> bytes:
        conn = self._require_conn()
        typ, data = conn.uid("FETCH", str(uid), f"(BODY.PEEK[{part}])")
        if typ != "OK":
            raise TransportError(f"FETCH BODY[{part}] of UID {uid} failed: {data!r}")
        key = f"BODY[{part}]"
        for segments in split_fetch_responses(data):
            _seq, attributes = parse_fetch_response(segments)
            value = attributes.get(key)
            if isinstance(value, bytes):
                return value
            if isinstance(value, str):
                return value.encode()
        raise TransportError(f"UID {uid} has no body section {part}")

    def _noop_blocking(self) -> bool:
        conn = self._require_conn()
        conn.noop()
        _typ, expunged = conn.response("EXPUNGE")
        _typ, counts = conn.response("EXISTS")
        removed = sum(1 for raw in expunged or [] if raw is not None)
        reported = [int(raw) for raw in counts or [] if raw is not None]
        changed = removed > 0 or any(count != self._exists for count in reported)
        if reported:
            self._exists = reported[-1]
        else:
            self._exists = max(self._exists - removed, 0)
        return changed

    def _logout_blocking(self) -> None:
        conn = self._require_conn()
        try:
            conn.logout()
        finally:
            self._conn = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection, authenticate and select the mailbox."""
        await self._call(self._connect_blocking)
        logger.info(
            "Selected %s (%d messages, UIDVALIDITY=%s)",
            self._settings.mailbox,
            self._exists,
            self._uid_validity,
        )

    async def current_tip(self, kind: CursorKind) -> int:
        """Return the mailbox position the cursor is compared against.

        Also refreshes ``exists`` and ``last_uid`` from the same STATUS.
        """
        items = ("MESSAGES", "UIDNEXT")
        if kind == "modseq":
            items += ("HIGHESTMODSEQ",)
        status = await self._call(self._status_blocking, items)
        self._exists = status["MESSAGES"]
        self._last_uid = max(status["UIDNEXT"] - 1, 0)
        if kind == "uid":
            return self._last_uid
        return status[_STATUS_ITEM[kind]]

    async def fetch_metadata_since(self, cursor: IngestionCursor) -> list[MessageMetadata]:
        """Fetch envelope and structure of every message past ``cursor``.

        A response that cannot be parsed is logged and skipped.
        """
        return await self._call(self._fetch_blocking, cursor)

    async def download(self, uid: int, part: str, encoding: str | None = None) -> bytes:
        """Download one body section and undo its transfer encoding."""
        try:
            raw = await self._call(self._download_blocking, uid, part)
        except FetchParseError as exc:
            raise TransportError(f"unparseable FETCH response: {exc}") from exc
        return decode_transfer_encoding(raw, encoding)

    async def wait_for_change(self, interval: float) -> None:
        """Poll with NOOP every ``interval`` seconds until the message count changes.

        An EXPUNGE counts as a change, so the caller re-checks the tip
        instead of comparing against a count that no longer holds.
        """
        while True:
            await asyncio.sleep(interval)
            if await self._call(self._noop_blocking):
                logger.debug("Mailbox changed (%d messages)", self._exists)
                return

    async def logout(self) -> None:
        await self._call(self._logout_blocking)

    def abort(self) -> None:
        """Close the socket without waiting for the server."""
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.shutdown()
        except OSError as exc:
            logger.debug("Socket shutdown failed: %s", exc)


def _open_connection(settings: ImapSettings) -> imaplib.IMAP4:
    if settings.use_tls:
        return imaplib.IMAP4_SSL(settings.host, settings.port, timeout=settings.socket_timeout_s)
    return imaplib.IMAP4(settings.host, settings.port, timeout=settings.socket_timeout_s)
