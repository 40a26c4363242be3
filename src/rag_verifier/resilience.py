"""Best-effort call helpers used by the retrieval components.

Collaborator calls are wrapped into an :class:`Outcome` instead of letting
exceptions escape, so each call site folds a failure into its documented
default with :meth:`Outcome.unwrap_or`:

    score = attempt(judge.score, query, content, timeout=5.0).unwrap_or(fallback)
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from .errors import CollaboratorTimeout, RetrievalCancelled

T = TypeVar("T")

# Shared pool for timed collaborator calls.
_POOL = ThreadPoolExecutor(max_workers=16, thread_name_prefix="rag-verifier-call")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a collaborator call: either a value or the error it raised."""

    value: T | None = None
    error: BaseException | None = None

    @classmethod
    def success(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException) -> Outcome[T]:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None:
            return default
        return self.value  # type: ignore[return-value]

    def map(self, fn: Callable[[T], T]) -> Outcome[T]:
        """Apply `fn` to a successful value; exceptions from `fn` become failures."""
        if self.error is not None:
            return self
        try:
            return Outcome.success(fn(self.value))  # type: ignore[arg-type]
        except Exception as exc:  # noqa: BLE001
            return Outcome.failure(exc)

    def describe_error(self) -> str:
        if self.error is None:
            return ""
        return f"{type(self.error).__name__}: {self.error}"


def call_with_timeout(fn: Callable[..., T], *args, timeout: float | None = None, **kwargs) -> T:
    """Run `fn` and raise :class:`CollaboratorTimeout` if it exceeds `timeout` seconds.

    With `timeout=None` the call runs inline on the current thread.
    """
    if timeout is None:
        return fn(*args, **kwargs)
    future = _POOL.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        name = getattr(fn, "__qualname__", repr(fn))
        raise CollaboratorTimeout(f"{name} exceeded {timeout:.2f}s") from exc


def attempt(fn: Callable[..., T], *args, timeout: float | None = None, **kwargs) -> Outcome[T]:
    """Call a collaborator and capture any failure, including timeouts, as an Outcome."""
    try:
        return Outcome.success(call_with_timeout(fn, *args, timeout=timeout, **kwargs))
    except Exception as exc:  # noqa: BLE001
        return Outcome.failure(exc)


def check_cancelled(cancel: threading.Event | None, stage: str) -> None:
    if cancel is not None and cancel.is_set():
        raise RetrievalCancelled(f"retrieval cancelled before {stage}")
