"""Shared schema definitions exchanged with the coordinator."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

SCRIPT_KIND = "script"
CUSTOM_KIND = "custom"


def _as_float(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return parsed if math.isfinite(parsed) else default


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item) for item in value if item is not None]


@dataclass(frozen=True)
class Task:
    """A unit of work handed out by the coordinator. Read-only on the client."""

    id: str
    operation: str
    input: float = 0.0
    payload: Any = None
    kind: str = CUSTOM_KIND
    required_capabilities: List[str] = field(default_factory=list)
    price: int = 0
    completed: bool = False
    verified: bool = False
    assigned_to: Optional[str] = None
    remaining_slots: Optional[int] = None

    @property
    def is_script(self) -> bool:
        return self.kind == SCRIPT_KIND

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Task":
        if not isinstance(data, Mapping):
            raise TypeError("task payload must be a JSON object")
        task_id = data.get("id")
        if task_id is None or str(task_id) == "":
            raise ValueError("task payload is missing an id")
        slots = data.get("remaining_slots")
        assigned = data.get("assigned_to")
        return cls(
            id=str(task_id),
            operation=str(data.get("operation") or ""),
            input=_as_float(data.get("input")),
            payload=data.get("payload"),
            kind=str(data.get("kind") or CUSTOM_KIND),
            required_capabilities=_as_str_list(data.get("required_capabilities")),
            price=max(0, int(_as_float(data.get("price")))),
            completed=bool(data.get("completed", False)),
            verified=bool(data.get("verified", False)),
            assigned_to=str(assigned) if assigned is not None else None,
            remaining_slots=int(slots) if isinstance(slots, (int, float)) and not isinstance(slots, bool) else None,
        )


@dataclass(frozen=True)
class Evaluation:
    """Output of the deterministic evaluator for one task."""

    output: float
    metadata: Optional[Dict[str, Any]] = None

    @property
    def failed(self) -> bool:
        return bool(self.metadata and "error" in self.metadata)

    @property
    def warning(self) -> Optional[str]:
        if not self.metadata:
            return None
        value = self.metadata.get("warning")
        return str(value) if value is not None else None


@dataclass(frozen=True)
class SignatureBlock:
    """Base64 signature and public key attached to a submitted result."""

    signature: str
    public_key: str


@dataclass(frozen=True)
class Result:
    """A signed output for one claimed task."""

    task_id: str
    worker_id: str
    output: float
    signature: SignatureBlock
    kind: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_submission(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "id": self.task_id,
            "worker": self.worker_id,
            "output": self.output,
            "signature": self.signature.signature,
            "pub_key": self.signature.public_key,
        }
        if self.kind:
            body["kind"] = self.kind
        if self.metadata:
            body["payload"] = self.metadata
        return body


@dataclass(frozen=True)
class Balance:
    """Trust and token totals for a worker."""

    trust: float = 0
    token: float = 0
    stale: bool = False

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Balance":
        if not isinstance(data, Mapping):
            raise TypeError("balance payload must be a JSON object")
        return cls(trust=data.get("trust") or 0, token=data.get("token") or 0)


__all__ = [
    "Balance",
    "CUSTOM_KIND",
    "Evaluation",
    "Result",
    "SCRIPT_KIND",
    "SignatureBlock",
    "Task",
]
