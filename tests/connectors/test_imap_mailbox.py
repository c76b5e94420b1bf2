"""Tests for the imaplib-backed mailbox client."""

from __future__ import annotations

import base64
import imaplib
from unittest.mock import MagicMock

import pytest

from shiftsync.connectors.cursor import IngestionCursor
from shiftsync.connectors.imap import (
    ImapMailbox,
    ImapSettings,
    TransportError,
    decode_transfer_encoding,
)

pytestmark = pytest.mark.unit

PDF_NAME = "Weekplanning (01-06-2024-07-06-2024).pdf"
STRUCTURE = (
    b'(("text" "plain" ("charset" "utf-8") NIL NIL "7bit" 12 1 NIL NIL NIL NIL)'
    b'("application" "pdf" ("name" "' + PDF_NAME.encode() + b'") NIL NIL "base64" 5000 NIL '
    b'("attachment" ("filename" "' + PDF_NAME.encode() + b'")) NIL NIL) "mixed")'
)
HEADER_ITEM = b"BODY[HEADER.FIELDS (FROM SUBJECT DATE)]"


def _fetch_item(seq: int, uid: int, sender: str, subject: str, extra: bytes = b"") -> list:
    headers = f"From: {sender}\r\nSubject: {subject}\r\n\r\n".encode()
    prefix = (
        f"{seq} (UID {uid} ".encode() + extra + b"BODYSTRUCTURE " + STRUCTURE + b" "
        + HEADER_ITEM + f" {{{len(headers)}}}".encode()
    )
    return [(prefix, headers), b")"]


@pytest.fixture
def conn() -> MagicMock:
    conn = MagicMock(spec=imaplib.IMAP4)
    conn.select.return_value = ("OK", [b"12"])
    untagged = {"UIDVALIDITY": [b"777"], "EXISTS": [None], "EXPUNGE": [None]}
    conn.response.side_effect = lambda name: ("OK", untagged[name])
    return conn


@pytest.fixture
async def mailbox(conn: MagicMock) -> ImapMailbox:
    box = ImapMailbox(
        ImapSettings(host="imap.example.com", username="me", password="pw"),
        connection_factory=lambda settings: conn,
    )
    await box.connect()
    return box


class TestConnect:
    async def test_login_and_select(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.login.assert_called_once_with("me", "pw")
        conn.select.assert_called_once_with('"INBOX"', readonly=True)
        assert mailbox.exists == 12
        assert mailbox.uid_validity == 777
        assert mailbox.identity == "me@imap.example.com/INBOX"

    async def test_os_error_becomes_transport_error(self):
        def factory(settings):
            raise ConnectionRefusedError("refused")

        box = ImapMailbox(ImapSettings(host="imap.example.com"), connection_factory=factory)
        with pytest.raises(TransportError, match="refused"):
            await box.connect()

    async def test_select_failure(self, conn: MagicMock):
        conn.select.return_value = ("NO", [b"no such mailbox"])
        box = ImapMailbox(
            ImapSettings(host="h", mailbox="Missing"), connection_factory=lambda settings: conn
        )
        with pytest.raises(TransportError, match="SELECT Missing failed"):
            await box.connect()


class TestCurrentTip:
    async def test_uid_tip_is_uidnext_minus_one(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.status.return_value = ("OK", [b'"INBOX" (MESSAGES 14 UIDNEXT 51)'])
        assert await mailbox.current_tip("uid") == 50
        conn.status.assert_called_once_with('"INBOX"', "(MESSAGES UIDNEXT)")
        assert mailbox.last_uid == 50

    async def test_count_tip(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.status.return_value = ("OK", [b'"INBOX" (MESSAGES 14 UIDNEXT 51)'])
        assert await mailbox.current_tip("count") == 14
        assert mailbox.exists == 14

    async def test_modseq_tip(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.status.return_value = (
            "OK",
            [b'"INBOX" (MESSAGES 14 UIDNEXT 51 HIGHESTMODSEQ 90210)'],
        )
        assert await mailbox.current_tip("modseq") == 90210
        conn.status.assert_called_once_with('"INBOX"', "(MESSAGES UIDNEXT HIGHESTMODSEQ)")

    async def test_empty_mailbox_has_no_last_uid(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.status.return_value = ("OK", [b'"INBOX" (MESSAGES 0 UIDNEXT 1)'])
        assert await mailbox.current_tip("uid") == 0
        assert mailbox.last_uid == 0

    async def test_imap_error_becomes_transport_error(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.status.side_effect = imaplib.IMAP4.abort("socket error: EOF")
        with pytest.raises(TransportError):
            await mailbox.current_tip("uid")


class TestFetchMetadata:
    async def test_uid_fetch_filters_at_or_below_cursor(
        self, mailbox: ImapMailbox, conn: MagicMock
    ):
        # "41:*" also returns the last message when nothing newer exists.
        data = _fetch_item(11, 40, "old@example.com", "old") + _fetch_item(
            12, 41, "Planner <Planner@Example.com>", "Weekplanning"
        )
        conn.uid.return_value = ("OK", data)

        messages = await mailbox.fetch_metadata_since(IngestionCursor(kind="uid", value=40))

        conn.uid.assert_called_once()
        assert conn.uid.call_args.args[:2] == ("FETCH", "41:*")
        [message] = messages
        assert message.uid == 41
        assert message.seq == 12
        assert message.position == 41
        assert message.subject == "Weekplanning"
        assert message.from_addresses == ["planner@example.com"]
        assert message.body_structure is not None
        assert message.body_structure.child_nodes[1].mime_type == "application/pdf"

    async def test_count_fetch_uses_sequence_numbers(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.fetch.return_value = ("OK", _fetch_item(13, 99, "a@example.com", "hi"))
        [message] = await mailbox.fetch_metadata_since(IngestionCursor(kind="count", value=12))
        assert conn.fetch.call_args.args[0] == "13:*"
        assert message.position == 13

    async def test_modseq_searches_then_fetches(self, mailbox: ImapMailbox, conn: MagicMock):
        fetched = _fetch_item(5, 70, "a@example.com", "hi", extra=b"MODSEQ (501) ")
        conn.uid.side_effect = [("OK", [b"70"]), ("OK", fetched)]
        [message] = await mailbox.fetch_metadata_since(IngestionCursor(kind="modseq", value=500))
        assert conn.uid.call_args_list[0].args == ("SEARCH", None, "UID 1:*", "MODSEQ 501")
        assert conn.uid.call_args_list[1].args[1] == "70"
        assert message.position == 501

    async def test_modseq_skips_flag_changes_on_dispatched_messages(
        self, mailbox: ImapMailbox, conn: MagicMock
    ):
        # UID 10 was dispatched long ago; only its flags changed.
        fetched = _fetch_item(2, 10, "a@example.com", "old", extra=b"MODSEQ (501) ") + _fetch_item(
            5, 70, "a@example.com", "new", extra=b"MODSEQ (502) "
        )
        conn.uid.side_effect = [("OK", [b"10 70"]), ("OK", fetched)]
        cursor = IngestionCursor(kind="modseq", value=500, last_uid=69)

        messages = await mailbox.fetch_metadata_since(cursor)

        assert conn.uid.call_args_list[0].args == ("SEARCH", None, "UID 70:*", "MODSEQ 501")
        assert [m.uid for m in messages] == [70]

    async def test_modseq_without_matches(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.uid.return_value = ("OK", [b""])
        assert await mailbox.fetch_metadata_since(IngestionCursor(kind="modseq", value=5)) == []
        conn.uid.assert_called_once()

    async def test_unsolicited_flag_update_is_ignored(self, mailbox: ImapMailbox, conn: MagicMock):
        data = [b"3 (FLAGS (\\Seen))"] + _fetch_item(12, 41, "a@example.com", "s")
        conn.uid.return_value = ("OK", data)
        messages = await mailbox.fetch_metadata_since(IngestionCursor(kind="uid", value=40))
        assert [m.uid for m in messages] == [41]

    async def test_bad_status(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.uid.return_value = ("BAD", [b"nope"])
        with pytest.raises(TransportError, match="FETCH failed"):
            await mailbox.fetch_metadata_since(IngestionCursor(kind="uid", value=1))

    async def test_unparseable_response_is_skipped(self, mailbox: ImapMailbox, conn: MagicMock):
        data = [b"11 (UID 41 BODYSTRUCTURE (\"text\""] + _fetch_item(12, 42, "a@example.com", "s")
        conn.uid.return_value = ("OK", data)
        messages = await mailbox.fetch_metadata_since(IngestionCursor(kind="uid", value=40))
        assert [m.uid for m in messages] == [42]

    async def test_bad_bodystructure_keeps_the_batch(self, mailbox: ImapMailbox, conn: MagicMock):
        data = [b'11 (UID 41 BODYSTRUCTURE ("application" "pdf" NIL))'] + _fetch_item(
            12, 42, "Planner <planner@example.com>", "Weekplanning"
        )
        conn.uid.return_value = ("OK", data)

        messages = await mailbox.fetch_metadata_since(IngestionCursor(kind="uid", value=40))

        assert [m.uid for m in messages] == [41, 42]
        assert messages[0].body_structure is None
        assert messages[1].body_structure is not None
        assert messages[1].subject == "Weekplanning"


class TestDownload:
    async def test_decodes_base64(self, mailbox: ImapMailbox, conn: MagicMock):
        payload = base64.b64encode(b"%PDF-1.4 content")
        conn.uid.return_value = ("OK", [(b"12 (UID 41 BODY[2] {%d}" % len(payload), payload), b")"])
        data = await mailbox.download(41, "2", "base64")
        assert data == b"%PDF-1.4 content"
        conn.uid.assert_called_once_with("FETCH", "41", "(BODY.PEEK[2])")

    async def test_missing_section(self, mailbox: ImapMailbox, conn: MagicMock):
        conn.uid.return_value = ("OK", [b"12 (UID 41)"])
        with pytest.raises(TransportError, match="no body section"):
            await mailbox.download(41, "2")


class TestDecodeTransferEncoding:
    def test_quoted_printable(self):
        assert decode_transfer_encoding(b"caf=C3=A9", "quoted-printable") == "café".encode()

    def test_identity(self):
        assert decode_transfer_encoding(b"raw", "7bit") == b"raw"
        assert decode_transfer_encoding(b"raw", None) == b"raw"

    def test_invalid_base64(self):
        with pytest.raises(TransportError):
            decode_transfer_encoding(b"abc", "base64")


class TestWaitForChange:
    @staticmethod
    def _queue_responses(conn: MagicMock, polls: list[dict[str, list]]) -> None:
        pending = iter(polls)
        current: dict[str, list] = {}

        def response(name: str):
            nonlocal current
            if name == "EXPUNGE":
                current = next(pending)
            return ("OK", current.get(name, [None]))

        conn.response.side_effect = response

    async def test_returns_when_exists_grows(self, mailbox: ImapMailbox, conn: MagicMock):
        self._queue_responses(conn, [{}, {"EXISTS": [b"12"]}, {"EXISTS": [b"13"]}])
        await mailbox.wait_for_change(0)
        assert conn.noop.call_count == 3
        assert mailbox.exists == 13

    async def test_expunge_counts_as_change(self, mailbox: ImapMailbox, conn: MagicMock):
        self._queue_responses(conn, [{"EXPUNGE": [b"3"]}])
        await mailbox.wait_for_change(0)
        assert conn.noop.call_count == 1
        assert mailbox.exists == 11

    async def test_delivery_after_expunge_is_noticed(self, mailbox: ImapMailbox, conn: MagicMock):
        # Back at the SELECT count of 12, but only because a message was removed first.
        self._queue_responses(conn, [{"EXPUNGE": [b"3"]}, {"EXISTS": [b"12"]}])
        await mailbox.wait_for_change(0)
        assert mailbox.exists == 11
        await mailbox.wait_for_change(0)
        assert conn.noop.call_count == 2
        assert mailbox.exists == 12


class TestLogoutAndAbort:
    async def test_logout(self, mailbox: ImapMailbox, conn: MagicMock):
        await mailbox.logout()
        conn.logout.assert_called_once()
        with pytest.raises(TransportError, match="not connected"):
            await mailbox.current_tip("uid")

    async def test_abort_shuts_down_socket(self, mailbox: ImapMailbox, conn: MagicMock):
        mailbox.abort()
        conn.shutdown.assert_called_once()
        mailbox.abort()
        conn.shutdown.assert_called_once()

    async def test_lock_is_shared(self, mailbox: ImapMailbox):
        assert mailbox.lock() is mailbox.lock()
