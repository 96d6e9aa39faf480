"""
Result monad — the core of Railway-Oriented Programming.

A Result[T] is either Success(value: T) or Failure(error: FailureDescription).
Operations return Result instead of raising; failures travel down the
failure track and every later stage is skipped.

    ┌───────────┐   flat_map    ┌───────────┐   flat_map    ┌──────────┐
    │ validate  │──Success──────│  upload   │──Success──────│ persist  │──→ Result[T]
    └─────┬─────┘               └─────┬─────┘               └─────┬────┘
          │ Failure                   │ Failure                   │ Failure
          └───────────────────────────┴───────────────────────────┴──→ Result[T]

Coroutines are first-class: ``from_computation_async`` wraps an adapter
coroutine at the I/O boundary and ``flat_map_async`` chains async stages.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from railway.failure import ErrorCode, FailureDescription

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


class Result(Generic[T]):
    """
    Railway-Oriented Programming Result monad.

        >>> Result.success(40000).map(lambda fee: fee // 10).value()
        4000
        >>> Result.failure(ErrorCode.NOT_FOUND, "no such type").map(len).is_failure()
        True
    """

    # ──────────────────────── Introspection ────────────────────────

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """The success value. Raises ValueError on a Failure."""
        if isinstance(self, Failure):
            raise ValueError(f"Cannot get value from a Failure: {self._error.message}")
        return self._value  # type: ignore[attr-defined]

    def error(self) -> FailureDescription:
        """The failure description. Raises ValueError on a Success."""
        if isinstance(self, Success):
            raise ValueError(f"Cannot get error from a Success: {self._value!r}")
        return self._error  # type: ignore[attr-defined]

    # ──────────────────────── Transformations ────────────────────────

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        """Fold both tracks into one value."""
        match self:
            case Success(v):
                return on_success(v)
            case Failure(err):
                return on_failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        """Transform the success value. Short-circuits on failure."""
        match self:
            case Success(v):
                return Success(mapper(v))
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def map_failure(
        self, mapper: Callable[[FailureDescription], FailureDescription]
    ) -> Result[T]:
        """Rewrite the failure (e.g. a 404 into NOT_FOUND). Success passes through."""
        match self:
            case Failure(err):
                return Failure(mapper(err))
        return self

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """
        Chain a Result-returning function. Short-circuits on failure.

        This is the operator that connects railway segments.
        """
        match self:
            case Success(v):
                return mapper(v)
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        """Run a side effect (logging, events) on the success value."""
        match self:
            case Success(v):
                action(v)
        return self

    async def flat_map_async(self, mapper: Callable[[T], Awaitable[Result[U]]]) -> Result[U]:
        """
        Chain an async Result-returning function.

            result = await validated.flat_map_async(persister.submit)

        An exception escaping ``mapper`` becomes an EXTERNAL_SERVICE_ERROR.
        """
        match self:
            case Failure(err):
                return Failure(err)
            case Success(v):
                try:
                    return await mapper(v)
                except Exception as e:
                    return Failure(
                        FailureDescription(ErrorCode.EXTERNAL_SERVICE_ERROR, "Async operation failed", e)
                    )
        raise TypeError("unreachable")  # pragma: no cover

    # ──────────────────────── Factories ────────────────────────

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure_from(error: FailureDescription) -> Result[T]:
        return Failure(error)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: Optional[BaseException] = None,
        details: Mapping[str, str] | None = None,
    ) -> Result[T]:
        """
        Create a failed Result.

            Result.failure(ErrorCode.NOT_FOUND, "Certificate not found")
            Result.failure(ErrorCode.VALIDATION_ERROR, "Invalid form", details={"phone": "..."})
        """
        return Failure(FailureDescription.create(code, message, exception, details))

    @staticmethod
    async def from_computation_async(
        computation: Callable[[], Awaitable[T]],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """
        Await a coroutine that may raise and capture the outcome as a Result.

        Used at adapter boundaries so no exception reaches business logic:

            return await Result.from_computation_async(
                lambda: self._put(path, content),
                ErrorCode.EXTERNAL_SERVICE_ERROR,
                "Blob upload failed",
            )

        The exception is kept on the FailureDescription for diagnostics.
        """
        try:
            return Result.success(await computation())
        except Exception as e:
            return Result.failure(error_code, f"{error_message}: {e}", e)

    @staticmethod
    def from_optional(
        value: Optional[T],
        error_message: str,
        error_code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ) -> Result[T]:
        """Success when ``value`` is not None, otherwise the given failure."""
        if value is None:
            return Result.failure(error_code, error_message)
        return Result.success(value)

    @staticmethod
    def all_of(results: Iterable[Result[T]]) -> Result[list[T]]:
        """
        Join Results into a Result of list (fan-in).

        The first failure in input order wins; otherwise every value is
        returned in input order.
        """
        values: list[T] = []
        for r in results:
            if isinstance(r, Failure):
                return Failure(r._error)
            values.append(r.value())
        return Success(values)

    # ──────────────────────── Dunder methods ────────────────────────

    def __bool__(self) -> bool:
        return self.is_success()


@dataclass(frozen=True, slots=True)
class Success(Result[T]):
    """The success track — wraps a non-None value of type T."""

    _value: T

    def __init__(self, value: T) -> None:
        if value is None:
            raise TypeError("Success value must not be None")
        object.__setattr__(self, "_value", value)

    def __repr__(self) -> str:
        return f"Success({self._value!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Success):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("Success", self._value))


Success.__match_args__ = ("_value",)


@dataclass(frozen=True, slots=True)
class Failure(Result[T]):
    """The failure track — wraps a FailureDescription. Equal by code and message."""

    _error: FailureDescription

    def __init__(self, error: FailureDescription) -> None:
        if error is None:
            raise TypeError("Failure error must not be None")
        object.__setattr__(self, "_error", error)

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Failure):
            return (self._error.code, self._error.message) == (
                other._error.code,
                other._error.message,
            )
        return NotImplemented

    def __hash__(self) -> int:
        return hash(("Failure", self._error.code, self._error.message))


Failure.__match_args__ = ("_error",)
