from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

JobType = Literal[
    "topic-regeneration",
    "challenge-regeneration",
    "goal-regeneration",
    "chat-response",
    "challenge-evaluation",
]

ACTIVE_STATUSES = frozenset({"pending", "running"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

TERMINAL_STREAM_STATUSES = frozenset({"completed", "failed"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(raw: str) -> datetime:
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_optional(raw: Any) -> datetime | None:
    return parse_datetime(raw) if isinstance(raw, str) and raw else None


@dataclass
class JobRecord:
    id: str
    type: str
    created_at: datetime
    status: str = "pending"  # pending | running | completed | failed | cancelled
    target_id: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "input": self.input,
            "createdAt": self.created_at.isoformat(),
        }
        optional = {
            "targetId": self.target_id,
            "result": self.result,
            "error": self.error,
            "startedAt": _format_datetime(self.started_at),
            "completedAt": _format_datetime(self.completed_at),
        }
        payload.update({k: v for k, v in optional.items() if v is not None})
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "JobRecord":
        return cls(
            id=str(payload["id"]),
            type=str(payload["type"]),
            created_at=parse_datetime(payload["createdAt"]),
            status=str(payload.get("status", "pending")),
            target_id=payload.get("targetId"),
            input=payload.get("input") or {},
            result=payload.get("result"),
            error=payload.get("error"),
            started_at=_parse_optional(payload.get("startedAt")),
            completed_at=_parse_optional(payload.get("completedAt")),
        )


@dataclass
class ActiveStreamEntry:
    job_id: str
    thread_id: str
    content: str = ""
    status: str = "streaming"  # streaming | completed | failed
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STREAM_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "threadId": self.thread_id,
            "content": self.content,
            "status": self.status,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ActiveStreamEntry":
        return cls(
            job_id=payload["jobId"],
            thread_id=payload["threadId"],
            content=payload["content"],
            status=payload["status"],
            updated_at=payload["updatedAt"],
        )
