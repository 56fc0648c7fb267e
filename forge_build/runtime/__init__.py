"""Controller runtime: requests, work queue, controllers and the manager."""

from forge_build.runtime.result import AggregateError, Request, Result
from forge_build.runtime.retry import RetryPolicy

__all__ = ["AggregateError", "Request", "Result", "RetryPolicy"]
