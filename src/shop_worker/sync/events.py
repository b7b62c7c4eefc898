"""Progress events streamed by a sync run."""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class SyncEventType(str, Enum):
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class SyncEvent:
    """One frame of the server-sent progress stream."""

    type: SyncEventType
    phase: str | None = None
    message: str | None = None
    current: int | None = None
    total: int | None = None
    stats: dict[str, int] | None = None
    errors: list[dict[str, str]] | None = None

    @classmethod
    def progress(
        cls,
        phase: str,
        message: str,
        *,
        current: int | None = None,
        total: int | None = None,
    ) -> SyncEvent:
        return cls(
            type=SyncEventType.PROGRESS,
            phase=phase,
            message=message,
            current=current,
            total=total,
        )

    @classmethod
    def complete(cls, stats: dict[str, int], errors: list[dict[str, str]]) -> SyncEvent:
        message = "Sync complete"
        if errors:
            message = f"Sync complete with {len(errors)} failed phase(s)"
        return cls(type=SyncEventType.COMPLETE, message=message, stats=stats, errors=errors)

    @classmethod
    def error(cls, message: str) -> SyncEvent:
        return cls(type=SyncEventType.ERROR, message=message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        for name in ("phase", "message", "current", "total", "stats", "errors"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload

    def to_sse(self) -> str:
        """Render as ``data: <json>\\n\\n``."""

        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False, separators=(',', ':'))}\n\n"
