"""HTTP-aware errors: an internal error paired with what the client may see."""

from __future__ import annotations


class SentinelHttpError(Exception):
    """An HTTP status and a message that is safe to send as a response body."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"SentinelHttpError({self.status!r}, {self.message!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SentinelHttpError):
            return NotImplemented
        return (self.status, self.message) == (other.status, other.message)

    def __hash__(self) -> int:
        return hash((self.status, self.message))

    def http_error(self) -> tuple[int, str]:
        """Return the status code and the message."""
        return self.status, self.message


class SentinelWrappedError(Exception):
    """An error meant for the logs, carrying the sentinel meant for the client."""

    def __init__(self, error: BaseException, sentinel: SentinelHttpError) -> None:
        super().__init__(str(error))
        self.error = error
        self.sentinel = sentinel
        self.__cause__ = error

    def __str__(self) -> str:
        return str(self.error)

    def __repr__(self) -> str:
        return f"SentinelWrappedError({self.error!r}, {self.sentinel!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SentinelWrappedError):
            return NotImplemented
        same_error = self.error is other.error or self.error == other.error
        return same_error and self.sentinel == other.sentinel

    def __hash__(self) -> int:
        return hash((id(self.error), self.sentinel))

    def matches(self, other: object) -> bool:
        """Tell whether ``other`` is the sentinel carried by this error."""
        return self.sentinel == other

    def http_error(self) -> tuple[int, str]:
        """Return the sentinel's status code and message."""
        return self.sentinel.http_error()


def wrap_error(err: BaseException, sentinel: SentinelHttpError) -> SentinelWrappedError:
    """Pair ``err`` (to be logged) with ``sentinel`` (to be sent as the response)."""
    return SentinelWrappedError(err, sentinel)