"""Normalization of raw Tibbo identifiers and board strings."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .errors import MalformedIdentifier

_DECIMAL = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class DiscoveredDevice:
    """A single discovery response."""

    board: str
    raw_id: str
    ip: Optional[str] = None


@dataclass(frozen=True)
class NormalizedDevice:
    """Canonical address and label type derived from a discovered device."""

    address: str
    label_type: str
    raw_id: str


def label_type_from_board(board: str) -> str:
    """Return the label type code for a board string.

    ``"TPP2W(G2)-LUA"`` becomes ``"TPP2W-G2"``.
    """

    prefix = board.split("-", 1)[0]
    return prefix.replace("(", "-", 1).replace(")", "")


def address_from_raw_id(raw_id: str) -> str:
    """Return the canonical dotted address for a raw identifier.

    Leading zeros are stripped from every segment, so ``"000"`` becomes ``"0"``.
    Segments stay strings; no length limit applies.
    """

    stripped = raw_id.replace("[", "").replace("]", "")
    segments = []
    for segment in stripped.split("."):
        if not _DECIMAL.fullmatch(segment):
            raise MalformedIdentifier(raw_id, segment)
        segments.append(segment.lstrip("0") or "0")
    return ".".join(segments)


def normalize(raw_id: str, board: str) -> NormalizedDevice:
    """Normalize a raw identifier and board string."""

    return NormalizedDevice(
        address=address_from_raw_id(raw_id),
        label_type=label_type_from_board(board),
        raw_id=raw_id,
    )


def normalize_device(device: DiscoveredDevice) -> NormalizedDevice:
    return normalize(device.raw_id, device.board)
