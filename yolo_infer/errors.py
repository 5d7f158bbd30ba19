from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Generic, Optional, TypeVar


T = TypeVar("T")


class ErrorCode(IntEnum):
    """
    Error codes reported to callers. 0 means success.

    The numeric values are part of the boundary contract and must not change.
    """

    OK = 0
    UNKNOWN = 1
    NOT_INITIALIZED = 2
    INVALID_ARGUMENT = 3
    ALLOCATION_FAILED = 4
    RUNTIME_FAILURE = 5
    RUNTIME_NOT_FOUND = 6


class InferenceError(Exception):
    code: ErrorCode = ErrorCode.UNKNOWN


class InvalidArgumentError(InferenceError, ValueError):
    code = ErrorCode.INVALID_ARGUMENT


class AllocationError(InferenceError, MemoryError):
    code = ErrorCode.ALLOCATION_FAILED


class RuntimeFailureError(InferenceError, RuntimeError):
    code = ErrorCode.RUNTIME_FAILURE


class RuntimeUnavailableError(InferenceError, RuntimeError):
    code = ErrorCode.RUNTIME_NOT_FOUND


class NotInitializedError(InferenceError):
    code = ErrorCode.NOT_INITIALIZED


class ResultReleasedError(InvalidArgumentError):
    """Raised when a result envelope is read or released after its release."""


_EXCEPTIONS = {
    ErrorCode.UNKNOWN: InferenceError,
    ErrorCode.NOT_INITIALIZED: NotInitializedError,
    ErrorCode.INVALID_ARGUMENT: InvalidArgumentError,
    ErrorCode.ALLOCATION_FAILED: AllocationError,
    ErrorCode.RUNTIME_FAILURE: RuntimeFailureError,
    ErrorCode.RUNTIME_NOT_FOUND: RuntimeUnavailableError,
}


@dataclass(frozen=True)
class Status:
    """
    Per-call error state: a code plus a human-readable message.
    """

    code: ErrorCode = ErrorCode.OK
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.code == ErrorCode.OK

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Status":
        if isinstance(exc, InferenceError):
            return cls(exc.code, str(exc))
        if isinstance(exc, MemoryError):
            return cls(ErrorCode.ALLOCATION_FAILED, str(exc) or "allocation failed")
        return cls(ErrorCode.UNKNOWN, f"{type(exc).__name__}: {exc}")

    def to_exception(self) -> InferenceError:
        return _EXCEPTIONS.get(self.code, InferenceError)(self.message)


OK = Status()


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Return value of every public entry point.

    `value` is None when the call failed. A value together with a non-OK status
    means the call completed but some images were degraded (see `status`).
    """

    value: Optional[T]
    status: Status = OK

    @property
    def ok(self) -> bool:
        return self.status.ok

    @classmethod
    def failure(cls, exc: BaseException) -> "Outcome[T]":
        return cls(None, Status.from_exception(exc))

    def unwrap(self) -> T:
        if self.value is None:
            raise self.status.to_exception()
        return self.value
