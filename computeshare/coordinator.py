"""HTTP client for the task coordinator."""

from __future__ import annotations

import dataclasses
import json
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set
from urllib.parse import urlsplit, urlunsplit

import requests

from . import policy
from .config import CAPABILITIES, DEFAULT_SERVER_URL
from .errors import CoordinatorHTTPError, ProtocolError, TransportError
from .evaluator import infer_capabilities, infer_kind
from .logs import log
from .schemas import Balance, Result, Task
from .seer import Fate, ModelHolder, PredictionModel, local_fate, normalize

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Return ``url`` with an http scheme when none is given and no trailing slash."""

    candidate = (url or "").strip()
    if not candidate:
        raise ValueError("Coordinator URL is required")
    if not _SCHEME.match(candidate):
        candidate = f"http://{candidate}"
    parts = urlsplit(candidate)
    if not parts.netloc:
        raise ValueError(f"Invalid coordinator URL: {url!r}")
    normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, parts.fragment))
    return normalized.rstrip("/")


@dataclass
class ClientContext:
    """Mutable client state shared by every coordinator operation.

    ``active_task`` is written only by the running claim cycle; everything
    else may read it.
    """

    api_base: str
    registered_workers: Set[str] = field(default_factory=set)
    active_task: Optional[Task] = None
    models: ModelHolder = field(default_factory=ModelHolder)
    last_balance: Dict[str, Balance] = field(default_factory=dict)
    last_overview: Optional[List[Task]] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    # Held for the whole of a claim cycle; see worker.ClaimCycle.
    claim_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


def _response_text(resp: requests.Response) -> str:
    try:
        return (resp.text or "").strip()
    except (UnicodeDecodeError, AttributeError):
        return ""


def _whole_price(price: Any) -> int:
    # The coordinator decodes price into an int64 and refuses "5.0".
    if isinstance(price, bool):
        raise ValueError("price must be a non-negative whole number")
    try:
        whole = int(price)
    except (TypeError, ValueError, OverflowError) as exc:
        raise ValueError("price must be a non-negative whole number") from exc
    if whole != price or whole < 0:
        raise ValueError("price must be a non-negative whole number")
    return whole


class CoordinatorClient:
    """One-shot calls against the coordinator's HTTP+JSON API."""

    def __init__(
        self,
        api_base: str = DEFAULT_SERVER_URL,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = None,
        capabilities: Sequence[str] = CAPABILITIES,
        context: Optional[ClientContext] = None,
    ) -> None:
        self.context = context or ClientContext(api_base=normalize_url(api_base))
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        self.timeout = timeout
        self.capabilities = list(capabilities)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @property
    def api_base(self) -> str:
        return self.context.api_base

    @property
    def model(self) -> PredictionModel:
        return self.context.models.model

    def set_api_base(self, url: str) -> str:
        normalized = normalize_url(url)
        with self.context.lock:
            if normalized != self.context.api_base:
                self.context.api_base = normalized
                # Registrations belong to the previous coordinator.
                self.context.registered_workers.clear()
                self.context.last_balance.clear()
                self.context.last_overview = None
        return normalized

    def endpoint(self, path: str) -> str:
        return f"{self.context.api_base}{path}"

    def _send(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
    ) -> requests.Response:
        url = self.endpoint(path)
        try:
            if method == "POST":
                data = json.dumps(payload) if payload is not None else None
                resp = self.session.post(url, data=data, headers=headers, params=params, timeout=self.timeout)
            else:
                resp = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransportError(f"{operation}: coordinator unreachable at {self.api_base} ({exc})", operation) from exc
        if not 200 <= resp.status_code < 300:
            body = _response_text(resp)
            message = f"{operation}: HTTP {resp.status_code}"
            if body:
                message = f"{message} {body}"
            raise CoordinatorHTTPError(message, operation, status_code=resp.status_code, body=body)
        return resp

    @staticmethod
    def _json(operation: str, resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ProtocolError(f"{operation}: response is not valid JSON ({exc})", operation) from exc

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def is_registered(self, worker_id: str) -> bool:
        with self.context.lock:
            return worker_id in self.context.registered_workers

    def register(self, worker_id: str, public_key: str, capabilities: Optional[Iterable[str]] = None) -> bool:
        """Register ``worker_id`` unless it was already registered by this process.

        Returns ``True`` when a registration request was sent.
        """

        if self.is_registered(worker_id):
            return False
        payload = {
            "worker_id": worker_id,
            "pub_key": public_key,
            "capabilities": list(capabilities) if capabilities is not None else list(self.capabilities),
        }
        policy.REGISTER.run(lambda: self._send("register", "POST", "/register", payload))
        with self.context.lock:
            self.context.registered_workers.add(worker_id)
        log("Registered with coordinator", prefix="✅", worker=worker_id, coordinator=self.api_base)
        return True

    def claim_task(self, worker_id: str) -> Optional[Task]:
        """Ask for a task. ``None`` means the coordinator has nothing for us."""

        def call() -> Optional[Task]:
            resp = self._send("claim_task", "GET", "/get_task", headers={"X-Worker-Id": worker_id})
            if resp.status_code == 204 or not _response_text(resp):
                return None
            data = self._json("claim_task", resp)
            try:
                return Task.from_payload(data)
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"claim_task: unusable task payload ({exc})", "claim_task") from exc

        task = policy.CLAIM_TASK.run(call)
        if task is None:
            log("No task available", prefix="⏳", worker=worker_id)
        else:
            log(f"Got task {task.id} ({task.operation})", prefix="📦", worker=worker_id)
        return task

    def submit_result(self, result: Result) -> None:
        payload = result.to_submission()
        policy.SUBMIT_RESULT.run(lambda: self._send("submit_result", "POST", "/submit_result", payload))
        log(f"Submitted result for {result.task_id}", prefix="✅", worker=result.worker_id, output=result.output)

    # ------------------------------------------------------------------
    # Task authoring
    # ------------------------------------------------------------------

    def create_task(
        self,
        operation: str,
        input_value: float = 0.0,
        price: int = 0,
        payload: Optional[Mapping[str, Any]] = None,
        kind: Optional[str] = None,
        required_capabilities: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        whole_price = _whole_price(price)
        body = {
            "operation": operation,
            "input": input_value,
            "price": whole_price,
            "kind": kind or infer_kind(operation),
            "payload": dict(payload or {}),
            "required_capabilities": list(required_capabilities)
            if required_capabilities is not None
            else infer_capabilities(operation),
        }

        def call() -> Dict[str, Any]:
            data = self._json("create_task", self._send("create_task", "POST", "/create_task", body))
            if not isinstance(data, dict):
                raise ProtocolError("create_task: response is not a JSON object", "create_task")
            return data

        created = policy.CREATE_TASK.run(call)
        log(f"Task {created.get('id')} queued", prefix="🌱", operation=operation, price=whole_price)
        return created

    def generate_tasks(self) -> None:
        policy.GENERATE_TASKS.run(lambda: self._send("generate_tasks", "POST", "/generate_tasks"))
        log("Coordinator seeded new tasks", prefix="🌱")

    # ------------------------------------------------------------------
    # Read endpoints
    # ------------------------------------------------------------------

    def fetch_overview(self) -> List[Task]:
        def call() -> List[Task]:
            data = self._json("fetch_overview", self._send("fetch_overview", "GET", "/tasks_overview"))
            if data is None:
                data = []
            if not isinstance(data, list):
                raise ProtocolError("fetch_overview: expected a JSON array", "fetch_overview")
            try:
                tasks = [Task.from_payload(item) for item in data]
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"fetch_overview: unusable task summary ({exc})", "fetch_overview") from exc
            with self.context.lock:
                self.context.last_overview = tasks
            return tasks

        with self.context.lock:
            cached = self.context.last_overview
        fallback = (lambda: list(cached)) if cached is not None else None
        return policy.FETCH_OVERVIEW.run(call, fallback)

    def fetch_balance(self, worker_id: str) -> Balance:
        def call() -> Balance:
            resp = self._send("fetch_balance", "GET", "/balance", params={"worker": worker_id})
            try:
                balance = Balance.from_payload(self._json("fetch_balance", resp))
            except TypeError as exc:
                raise ProtocolError(f"fetch_balance: {exc}", "fetch_balance") from exc
            with self.context.lock:
                self.context.last_balance[worker_id] = balance
            return balance

        def fallback() -> Balance:
            with self.context.lock:
                cached = self.context.last_balance.get(worker_id)
            if cached is None:
                return Balance(stale=True)
            return dataclasses.replace(cached, stale=True)

        return policy.FETCH_BALANCE.run(call, fallback)

    def fetch_remote_model(self) -> PredictionModel:
        """Refresh the prediction model. Falls back to the held model on any failure."""

        def call() -> PredictionModel:
            data = self._json("fetch_remote_model", self._send("fetch_remote_model", "GET", "/seer/model"))
            if not isinstance(data, Mapping):
                raise ProtocolError("fetch_remote_model: expected a JSON object", "fetch_remote_model")
            model = self.context.models.replace(normalize(data))
            log("Loaded prediction model from coordinator", prefix="🔮")
            return model

        def fallback() -> PredictionModel:
            return self.context.models.replace(normalize(self.context.models.model))

        return policy.FETCH_MODEL.run(call, fallback)

    def predict(self, age: float, city: str = "", country: str = "", tags: str = "") -> Fate:
        payload = {"age": age, "city": city, "country": country, "ethnicity": tags}

        def call() -> Fate:
            data = self._json("predict", self._send("predict", "POST", "/seer/predict", payload))
            try:
                return Fate.from_payload(data)
            except (TypeError, ValueError) as exc:
                raise ProtocolError(f"predict: unusable prediction ({exc})", "predict") from exc

        return policy.PREDICT.run(call, lambda: local_fate(age, city, country, tags, model=self.model))


__all__ = ["ClientContext", "CoordinatorClient", "normalize_url"]
