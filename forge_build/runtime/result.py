"""Reconcile results and error aggregation."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Request:
    """Identifies the object to reconcile."""

    namespace: str
    name: str

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile pass.

    Attributes:
        requeue_after: Seconds after which the request is processed again;
            0 means no scheduled requeue.
    """

    requeue_after: float = 0.0

    @property
    def is_zero(self) -> bool:
        return self.requeue_after <= 0


def lowest_non_zero(a: Result, b: Result) -> Result:
    """Return the result with the earliest non-zero requeue."""
    if a.is_zero:
        return b
    if b.is_zero:
        return a
    return a if a.requeue_after <= b.requeue_after else b


class AggregateError(Exception):
    """Several errors raised by one reconcile pass."""

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = list(errors)
        self.code = "aggregate_error"
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(message)


def aggregate(errors: list[BaseException]) -> BaseException | None:
    """Combine errors; None when there are none, the error itself when one."""
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return AggregateError(errors)


__all__ = ["AggregateError", "Request", "Result", "aggregate", "lowest_non_zero"]
