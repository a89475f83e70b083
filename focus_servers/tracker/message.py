"""Wire-level unit exchanged on the control channel.

Frames are flat JSON objects: ``{"type": <kind>, "tabId": <int>, "timestamp": <ms>}``.
``tabId`` may be absent only for ``distraction`` (reported before the tab is identified).
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

LEGACY_DISTRACTION_FRAME = "distraction"


def _now_ms() -> int:
    return int(time.time() * 1000)


class MessageError(ValueError):
    pass


class MessageKind(str, Enum):
    DISTRACTION = "distraction"
    CLOSE_TAB = "close-tab"
    FREEZE_TAB = "freeze-tab"
    TAB_CLOSED = "tab-closed"
    UNFREEZE_TAB = "unfreeze-tab"

    @property
    def requires_tab_id(self) -> bool:
        return self is not MessageKind.DISTRACTION


COMMAND_KINDS = frozenset({MessageKind.CLOSE_TAB, MessageKind.FREEZE_TAB, MessageKind.UNFREEZE_TAB})


def _valid_tab_id(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True, slots=True)
class Message:
    kind: MessageKind
    tab_id: int | None = None
    timestamp: int = field(default_factory=_now_ms)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, MessageKind):
            raise MessageError(f"unknown message kind: {self.kind!r}")
        if self.tab_id is not None and not _valid_tab_id(self.tab_id):
            raise MessageError(f"tabId must be an integer, got {self.tab_id!r}")
        if self.tab_id is None and self.kind.requires_tab_id:
            raise MessageError(f"{self.kind.value} requires a tabId")
        if not _valid_tab_id(self.timestamp):
            raise MessageError(f"timestamp must be an integer, got {self.timestamp!r}")

    # Constructors for the common kinds.

    @classmethod
    def distraction(cls, tab_id: int | None = None) -> Message:
        return cls(MessageKind.DISTRACTION, tab_id)

    @classmethod
    def close_tab(cls, tab_id: int) -> Message:
        return cls(MessageKind.CLOSE_TAB, tab_id)

    @classmethod
    def freeze_tab(cls, tab_id: int) -> Message:
        return cls(MessageKind.FREEZE_TAB, tab_id)

    @classmethod
    def unfreeze_tab(cls, tab_id: int) -> Message:
        return cls(MessageKind.UNFREEZE_TAB, tab_id)

    @classmethod
    def tab_closed(cls, tab_id: int) -> Message:
        return cls(MessageKind.TAB_CLOSED, tab_id)

    @property
    def is_command(self) -> bool:
        return self.kind in COMMAND_KINDS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind.value}
        if self.tab_id is not None:
            payload["tabId"] = self.tab_id
        payload["timestamp"] = self.timestamp
        return payload

    def encode(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> Message:
        if not isinstance(data, dict):
            raise MessageError("frame must be a JSON object")
        raw_kind = data.get("type")
        try:
            kind = MessageKind(raw_kind)
        except ValueError as exc:
            raise MessageError(f"unknown message kind: {raw_kind!r}") from exc
        tab_id = data.get("tabId")
        raw_ts = data.get("timestamp")
        # Timestamps are advisory; a sender that omits one gets receive-time.
        timestamp = raw_ts if _valid_tab_id(raw_ts) else _now_ms()
        return cls(kind, tab_id, timestamp)

    @classmethod
    def decode(cls, raw: str | bytes) -> Message:
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise MessageError("frame is not valid UTF-8") from exc
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MessageError("frame is not valid JSON") from exc
        return cls.from_dict(data)


def parse_frame(raw: str | bytes, *, allow_legacy: bool = False) -> Message | None:
    """Decode a frame, returning None for anything malformed.

    With ``allow_legacy`` a bare ``distraction`` text frame is accepted as a
    Distraction without a tab id.
    """
    try:
        return Message.decode(raw)
    except MessageError:
        pass
    if allow_legacy:
        text = raw.decode("utf-8", "replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
        if text == LEGACY_DISTRACTION_FRAME:
            return Message.distraction()
    return None


__all__ = [
    "COMMAND_KINDS",
    "LEGACY_DISTRACTION_FRAME",
    "Message",
    "MessageError",
    "MessageKind",
    "parse_frame",
]
