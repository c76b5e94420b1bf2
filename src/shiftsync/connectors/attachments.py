"""Find attachments in a message's MIME tree and pick the schedule candidate."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from shiftsync.connectors.bodystructure import MimeNode

UNNAMED = "unnamed"


@dataclass(frozen=True)
class AttachmentDescriptor:
    """An attachment located by its IMAP section number.

    ``encoding`` is the content transfer encoding needed to decode the
    downloaded section.
    """

    part: str
    mime_type: str
    size_bytes: int
    filename: str = UNNAMED
    encoding: str | None = None


def _is_attachment(node: MimeNode) -> bool:
    if node.disposition == "attachment":
        return True
    return node.disposition is None and node.type not in ("text", "multipart")


def find_attachments(
    node: MimeNode,
    path: tuple[int, ...] = (),
) -> list[AttachmentDescriptor]:
    """Walk the tree depth-first and return attachments in document order.

    ``path`` holds the 1-based child positions leading to ``node``; it is
    rendered as the IMAP section number (``"2.1"``), or ``"1"`` at the root.
    """
    found: list[AttachmentDescriptor] = []
    if _is_attachment(node):
        found.append(
            AttachmentDescriptor(
                part=".".join(str(p) for p in path) or "1",
                mime_type=node.mime_type,
                size_bytes=node.size,
                filename=(
                    node.disposition_parameters.get("filename")
                    or node.parameters.get("name")
                    or UNNAMED
                ),
                encoding=node.encoding,
            )
        )
    for index, child in enumerate(node.child_nodes, start=1):
        found.extend(find_attachments(child, (*path, index)))
    return found


def select_attachment(
    attachments: Sequence[AttachmentDescriptor],
) -> AttachmentDescriptor | None:
    """Return the first attachment that has a filename, or ``None``."""
    for attachment in attachments:
        if attachment.filename != UNNAMED:
            return attachment
    return None
