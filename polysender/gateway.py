"""Interfaces of sending gateways and retryability of send errors."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class Gateway(Protocol):
    """A channel with sending limits; a limit of 0 means none."""

    limit_per_minute: int
    limit_per_hour: int
    limit_per_day: int

    def concurrency(self) -> int:
        """Maximum number of simultaneous connections."""
        ...


@runtime_checkable
class SenderClient(Protocol):
    """A connection that can deliver messages."""

    def pre_send(self) -> None: ...

    def send(self, to: str, subject: str, message: str, broadcast_id: str) -> None: ...

    def post_send(self) -> None: ...


class _Marked(Exception):
    retryable: bool = False

    def __init__(self, err: BaseException | str) -> None:
        if isinstance(err, BaseException):
            super().__init__(str(err))
            self.err: BaseException | None = err
            self.__cause__ = err
        else:
            super().__init__(err)
            self.err = None

    def __str__(self) -> str:
        return str(self.err) if self.err is not None else super().__str__()


class RetryableError(_Marked):
    """An error after which sending may be tried again."""

    retryable = True


class NonRetryableError(_Marked):
    """An error after which sending must not be tried again."""

    retryable = False


def is_retryable(err: BaseException | None) -> bool:
    """Whether the first retryability mark in err's cause chain says retryable."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        if isinstance(err, _Marked):
            return err.retryable
        err = err.__cause__
    return False


def wrap_retryable(err: BaseException | None) -> RetryableError | None:
    """Mark err as retryable; None stays None."""
    return None if err is None else RetryableError(err)


def wrap_non_retryable(err: BaseException | None) -> NonRetryableError | None:
    """Mark err as non-retryable; None stays None."""
    return None if err is None else NonRetryableError(err)