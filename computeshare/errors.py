"""Exception types raised across the worker client."""

from __future__ import annotations

from typing import Optional


class CoordinatorError(RuntimeError):
    """Raised when a coordinator call could not be completed."""

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.operation = operation


class TransportError(CoordinatorError):
    """Raised when the coordinator could not be reached."""


class CoordinatorHTTPError(CoordinatorError):
    """Raised when the coordinator answered with a non-2xx status."""

    def __init__(self, message: str, operation: str = "", status_code: int = 0, body: str = "") -> None:
        super().__init__(message, operation)
        self.status_code = status_code
        self.body = body


class ProtocolError(CoordinatorError):
    """Raised when a coordinator response body could not be understood."""


class ScriptError(ValueError):
    """Base error for rejected script tasks."""

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(message)
        self.source = source


class ScriptSyntaxError(ScriptError):
    """Raised when a script is not a well-formed print(expression) call."""


class ScriptCharacterError(ScriptError):
    """Raised when an expression contains characters outside the whitelist."""


class NonFiniteResultError(ScriptError):
    """Raised when an expression evaluates to NaN or an infinity."""


class ClaimInProgressError(RuntimeError):
    """Raised when a claim cycle is started while another one is running."""


__all__ = [
    "ClaimInProgressError",
    "CoordinatorError",
    "CoordinatorHTTPError",
    "NonFiniteResultError",
    "ProtocolError",
    "ScriptCharacterError",
    "ScriptError",
    "ScriptSyntaxError",
    "TransportError",
]
