from __future__ import annotations

from typing import Union


class ChatlogError(Exception):
    """base class for errors that can be reported to an API client. subclasses set
    `status_code` to the HTTP status that the server responds with."""

    status_code: int = 500

    def __init__(self, message: str = "", cause: Union[BaseException, None] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        if self.cause is not None and not self.message:
            return str(self.cause)
        return self.message


class InvalidArgument(ChatlogError):
    status_code = 400

    def __init__(self, argument: str = "", cause: Union[BaseException, None] = None):
        super().__init__(f"invalid argument: {argument}", cause)
        self.argument = argument


class NotFound(ChatlogError):
    status_code = 404


class StoreFailure(ChatlogError):
    """the chat database could not answer a lookup."""

    status_code = 500


class MediaNotFound(StoreFailure):
    """the chat database answered, but holds no media record for the key."""

    status_code = 404

    def __init__(self, category: str, key: str):
        super().__init__(f"{category} not found: {key}")
        self.category = category
        self.key = key


class DecodeError(ChatlogError):
    """raised by container decoders for input they don't recognize."""


class TranscodeError(ChatlogError):
    """raised by voice transcoders that couldn't produce audio."""


class ErrorAggregator:
    """holds on to the most recent error out of a series of attempts that are each
    allowed to fail, so that the error can be reported only once every attempt has
    failed.

    >>> errors = ErrorAggregator()
    >>> for key in keys:
    ...     try:
    ...         return lookup(key)
    ...     except StoreFailure as e:
    ...         errors.record(e)
    >>> errors.raise_if_any()
    """

    def __init__(self):
        self.last: Union[ChatlogError, None] = None
        self.count = 0

    def record(self, error: ChatlogError) -> None:
        self.last = error
        self.count += 1

    def __bool__(self) -> bool:
        return self.last is not None

    def raise_if_any(self) -> None:
        if self.last is not None:
            raise self.last
