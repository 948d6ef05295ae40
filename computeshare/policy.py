"""Failure handling for coordinator calls.

Read endpoints degrade to cached or locally computed data. Write endpoints
surface the error so the caller can decide whether to try again. Nothing
here retries.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from .errors import CoordinatorError
from .logs import warn

T = TypeVar("T")


class OperationKind(str, Enum):
    READ = "read"
    WRITE = "write"


@dataclass(frozen=True)
class CallPolicy:
    operation: str
    kind: OperationKind

    def run(self, call: Callable[[], T], fallback: Optional[Callable[[], T]] = None) -> T:
        try:
            return call()
        except CoordinatorError as exc:
            if self.kind is OperationKind.WRITE or fallback is None:
                raise
            warn(f"{self.operation} failed, using fallback: {exc}", operation=self.operation)
            return fallback()


REGISTER = CallPolicy("register", OperationKind.WRITE)
CLAIM_TASK = CallPolicy("claim_task", OperationKind.WRITE)
SUBMIT_RESULT = CallPolicy("submit_result", OperationKind.WRITE)
CREATE_TASK = CallPolicy("create_task", OperationKind.WRITE)
GENERATE_TASKS = CallPolicy("generate_tasks", OperationKind.WRITE)
FETCH_BALANCE = CallPolicy("fetch_balance", OperationKind.READ)
FETCH_OVERVIEW = CallPolicy("fetch_overview", OperationKind.READ)
FETCH_MODEL = CallPolicy("fetch_remote_model", OperationKind.READ)
PREDICT = CallPolicy("predict", OperationKind.READ)


__all__ = [
    "CLAIM_TASK",
    "CREATE_TASK",
    "CallPolicy",
    "FETCH_BALANCE",
    "FETCH_MODEL",
    "FETCH_OVERVIEW",
    "GENERATE_TASKS",
    "OperationKind",
    "PREDICT",
    "REGISTER",
    "SUBMIT_RESULT",
]
