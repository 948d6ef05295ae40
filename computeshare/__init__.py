"""Worker client for the compute share coordinator.

Registers a worker, claims tasks, evaluates them deterministically, signs the
result with the worker's Ed25519 key and submits it. Also carries the offline
seer model used when the coordinator cannot answer a prediction.
"""

from .coordinator import ClientContext, CoordinatorClient
from .evaluator import evaluate, evaluate_script
from .identity import FileKeyStore, IdentityManager, MemoryKeyStore
from .seer import local_fate, normalize, predict
from .worker import ClaimCycle, Refresher

__all__ = [
    "ClaimCycle",
    "ClientContext",
    "CoordinatorClient",
    "FileKeyStore",
    "IdentityManager",
    "MemoryKeyStore",
    "Refresher",
    "evaluate",
    "evaluate_script",
    "local_fate",
    "normalize",
    "predict",
]
