"""Ingestion cursor: the high-water mark of mailbox items already dispatched.

A cursor only ever moves forward. The value is compared against the mailbox
"tip" (message count, highest UID or highest MODSEQ, depending on the kind)
to decide whether a gap of unseen messages exists.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

CursorKind = Literal["count", "uid", "modseq"]
CURSOR_KINDS: tuple[str, ...] = ("count", "uid", "modseq")


class IngestionCursor(BaseModel):
    """Tagged high-water mark ``{kind, value}``.

    ``last_uid`` is the highest UID already dispatched. A ``modseq`` cursor
    needs it because MODSEQ also moves when flags change on old messages.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: CursorKind
    value: int = Field(ge=0)
    last_uid: int = Field(default=0, ge=0)

    def is_behind(self, tip: int) -> bool:
        return self.value < tip

    def advance(self, tip: int, last_uid: int = 0) -> IngestionCursor:
        """Return a cursor at ``max(value, tip)``; never moves backwards."""
        if tip <= self.value and last_uid <= self.last_uid:
            return self
        return IngestionCursor(
            kind=self.kind,
            value=max(self.value, tip),
            last_uid=max(self.last_uid, last_uid),
        )

    def advance_to(self, other: IngestionCursor) -> IngestionCursor:
        if other.kind != self.kind:
            raise ValueError(f"cannot advance a {self.kind} cursor with a {other.kind} cursor")
        return self.advance(other.value, other.last_uid)

    def resync(self, tip: int, last_uid: int = 0) -> IngestionCursor:
        """Reset to ``tip`` unconditionally (mailbox identity changed)."""
        return IngestionCursor(kind=self.kind, value=tip, last_uid=last_uid)


class CursorState(BaseModel):
    """On-disk checkpoint."""

    model_config = ConfigDict(extra="forbid")

    kind: CursorKind
    value: int = Field(ge=0)
    last_uid: int = Field(default=0, ge=0)
    uid_validity: int | None = None
    last_updated_at: str  # ISO 8601 timestamp


class CursorStore:
    """Holds the current cursor and optionally persists it as JSON.

    Without a path the cursor lives in memory for the life of the process.
    """

    def __init__(self, kind: CursorKind, path: Path | None = None) -> None:
        self._kind = kind
        self._path = Path(path) if path is not None else None
        self._cursor: IngestionCursor | None = None
        self._uid_validity: int | None = None
        self._loaded = False

    @property
    def kind(self) -> CursorKind:
        return self._kind

    @property
    def cursor(self) -> IngestionCursor | None:
        return self._cursor

    def load(self, uid_validity: int | None = None) -> IngestionCursor | None:
        """Return the stored cursor, or ``None`` if the caller must initialize from the tip.

        A checkpoint of another kind, an unreadable checkpoint, or one taken
        under a different UIDVALIDITY is discarded.
        """
        if self._loaded:
            if (
                self._cursor is not None
                and uid_validity is not None
                and self._uid_validity is not None
                and uid_validity != self._uid_validity
            ):
                logger.warning(
                    "UIDVALIDITY changed from %s to %s, resynchronizing cursor",
                    self._uid_validity,
                    uid_validity,
                )
                self._cursor = None
            return self._cursor

        self._loaded = True
        if self._path is None or not self._path.exists():
            return None

        try:
            state = CursorState.model_validate(json.loads(self._path.read_text()))
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning("Ignoring unreadable cursor file %s: %s", self._path, exc)
            return None

        if state.kind != self._kind:
            logger.warning(
                "Cursor file %s holds a %s cursor but %s is configured, resynchronizing",
                self._path,
                state.kind,
                self._kind,
            )
            return None
        if (
            uid_validity is not None
            and state.uid_validity is not None
            and state.uid_validity != uid_validity
        ):
            logger.warning(
                "UIDVALIDITY changed from %s to %s, resynchronizing cursor",
                state.uid_validity,
                uid_validity,
            )
            return None

        self._cursor = IngestionCursor(
            kind=state.kind, value=state.value, last_uid=state.last_uid
        )
        self._uid_validity = state.uid_validity
        logger.info("Loaded cursor %s=%d from %s", state.kind, state.value, self._path)
        return self._cursor

    def commit(self, cursor: IngestionCursor, uid_validity: int | None = None) -> IngestionCursor:
        """Store ``cursor`` if it is ahead of the current one and persist it."""
        if cursor.kind != self._kind:
            raise ValueError(f"cannot store a {cursor.kind} cursor in a {self._kind} store")
        if self._cursor is not None:
            cursor = self._cursor.advance_to(cursor)
        return self._store(cursor, uid_validity)

    def reset(self, cursor: IngestionCursor, uid_validity: int | None = None) -> IngestionCursor:
        """Replace the cursor unconditionally (initialization and resync)."""
        if cursor.kind != self._kind:
            raise ValueError(f"cannot store a {cursor.kind} cursor in a {self._kind} store")
        return self._store(cursor, uid_validity)

    def _store(self, cursor: IngestionCursor, uid_validity: int | None) -> IngestionCursor:
        self._cursor = cursor
        if uid_validity is not None:
            self._uid_validity = uid_validity
        self._loaded = True
        if self._path is not None:
            state = CursorState(
                kind=cursor.kind,
                value=cursor.value,
                last_uid=cursor.last_uid,
                uid_validity=self._uid_validity,
                last_updated_at=datetime.now(UTC).isoformat(),
            )
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(state.model_dump_json(indent=2))
            logger.debug("Saved cursor %s=%d", cursor.kind, cursor.value)
        return cursor
