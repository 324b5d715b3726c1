"""Outcome of an operation whose failures are reported rather than raised."""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from wabot.services.errors import UpstreamUnavailableError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def unavailable(exc: UpstreamUnavailableError) -> "Result[T]":
        """Failure for a dependency outage; the message names the dependency."""
        return Result(ok=False, error=f"{exc.dependency} unavailable: {exc}", error_code="upstream_unavailable")

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
