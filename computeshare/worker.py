"""Claim cycle and background refresh for a single worker."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .config import DEFAULT_REFRESH_INTERVAL
from .coordinator import CoordinatorClient
from .errors import ClaimInProgressError, CoordinatorError
from .evaluator import evaluate_task
from .identity import IdentityManager
from .logs import log, warn
from .schemas import Balance, Evaluation, Result, Task

SUBMITTED = "submitted"
NO_TASK = "no_task"
REJECTED = "rejected"
FAILED = "failed"


class ClaimState(str, Enum):
    IDLE = "idle"
    REGISTERING = "registering"
    AWAITING_TASK = "awaiting_task"
    COMPUTING = "computing"
    SUBMITTING = "submitting"
    FAILED = "failed"


@dataclass
class CycleOutcome:
    status: str
    task: Optional[Task] = None
    evaluation: Optional[Evaluation] = None
    result: Optional[Result] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.status in (SUBMITTED, NO_TASK)


class ClaimCycle:
    """register → claim → evaluate → sign → submit, one task at a time.

    Nothing is retried. A coordinator failure ends the cycle with a
    ``failed`` outcome and the caller decides whether to run again.
    """

    def __init__(self, client: CoordinatorClient, identity: IdentityManager, worker_id: str) -> None:
        self.client = client
        self.identity = identity
        self.worker_id = worker_id
        self.state = ClaimState.IDLE
        self.history: List[ClaimState] = []

    def _enter(self, state: ClaimState) -> None:
        self.state = state
        self.history.append(state)

    def run(self) -> CycleOutcome:
        context = self.client.context
        if not context.claim_lock.acquire(blocking=False):
            raise ClaimInProgressError(f"a claim cycle is already running for {self.worker_id}")
        self.history = []
        try:
            return self._run()
        finally:
            with context.lock:
                context.active_task = None
            self._enter(ClaimState.IDLE)
            context.claim_lock.release()

    def _run(self) -> CycleOutcome:
        task: Optional[Task] = None
        try:
            self._enter(ClaimState.REGISTERING)
            self.client.register(self.worker_id, self.identity.public_key_b64)

            self._enter(ClaimState.AWAITING_TASK)
            task = self.client.claim_task(self.worker_id)
            if task is None:
                return CycleOutcome(NO_TASK)
            with self.client.context.lock:
                self.client.context.active_task = task

            self._enter(ClaimState.COMPUTING)
            evaluation = evaluate_task(task)
            if evaluation.failed:
                self._enter(ClaimState.FAILED)
                warn(
                    f"Task {task.id} rejected: {evaluation.metadata['error']}",
                    worker=self.worker_id,
                    operation=task.operation,
                )
                return CycleOutcome(REJECTED, task=task, evaluation=evaluation)
            if evaluation.warning:
                warn(f"Task {task.id}: {evaluation.warning}", worker=self.worker_id, operation=task.operation)

            signature = self.identity.sign_result(task.id, self.worker_id, evaluation.output)
            result = Result(
                task_id=task.id,
                worker_id=self.worker_id,
                output=evaluation.output,
                signature=signature,
                kind=task.kind,
                metadata=evaluation.metadata,
            )

            self._enter(ClaimState.SUBMITTING)
            self.client.submit_result(result)
            return CycleOutcome(SUBMITTED, task=task, evaluation=evaluation, result=result)
        except CoordinatorError as exc:
            self._enter(ClaimState.FAILED)
            warn(f"Claim cycle failed during {exc.operation or 'request'}: {exc}", worker=self.worker_id)
            return CycleOutcome(FAILED, task=task, error=exc)


class Refresher(threading.Thread):
    """Periodically refreshes balance and overview. Never touches claim state."""

    def __init__(
        self,
        client: CoordinatorClient,
        worker_id: str,
        interval: float = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        super().__init__(name="computeshare-refresher", daemon=True)
        self.client = client
        self.worker_id = worker_id
        self.interval = interval
        self._stopped = threading.Event()
        self.balance: Optional[Balance] = None
        self.overview: Optional[List[Task]] = None

    def refresh_once(self) -> None:
        self.balance = self.client.fetch_balance(self.worker_id)
        try:
            self.overview = self.client.fetch_overview()
        except CoordinatorError as exc:
            # No cached overview yet.
            warn(f"Overview unavailable: {exc}", worker=self.worker_id)
        stale = " (stale)" if self.balance.stale else ""
        log(
            f"Balance trust={self.balance.trust} token={self.balance.token}{stale}",
            prefix="💰",
            worker=self.worker_id,
        )

    def run(self) -> None:
        while not self._stopped.is_set():
            self.refresh_once()
            self._stopped.wait(self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)


__all__ = [
    "ClaimCycle",
    "ClaimState",
    "CycleOutcome",
    "FAILED",
    "NO_TASK",
    "REJECTED",
    "Refresher",
    "SUBMITTED",
]
