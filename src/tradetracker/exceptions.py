from __future__ import annotations

from typing import Optional


class TradeTrackerException(Exception):
    """
    Base class for tradetracker exceptions
    """


class TradeTrackerSystemExit(SystemExit):
    """
    Base system exit class for tradetracker
    """


class RemoteApiError(TradeTrackerException):
    """
    An exchange API call failed.

    ``code`` carries the exchange-native error code when one is known.
    """

    retryable = False
    # set when the failure interrupted a fetch that persisted partial data
    partial = None

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class TransientApiError(RemoteApiError):
    """
    Network timeouts, 5xx responses and similar failures worth retrying
    """

    retryable = True


class RateLimitError(TransientApiError):
    """
    The exchange asked us to slow down
    """


class PaginationError(RemoteApiError):
    """
    A paged listing did not terminate: its cursor repeated or it exceeded the page cap
    """


class AuthenticationError(RemoteApiError):
    """
    Invalid, expired or revoked credentials
    """


class PermissionDeniedError(AuthenticationError):
    """
    The credentials are valid but lack a required permission
    """


class CredentialsError(TradeTrackerException):
    """
    No usable credentials could be found for an account
    """


class HistoryFetchError(TradeTrackerException):
    """
    A historical fetch stopped before covering its requested span.

    ``partial`` holds whatever was accumulated, already persisted with
    ``is_complete=False``.
    """

    def __init__(self, message: str, partial=None) -> None:
        super().__init__(message)
        self.partial = partial


class FetchCancelledError(HistoryFetchError):
    """
    The caller abandoned the fetch
    """


class InvalidStateTransition(TradeTrackerException):
    """
    A fetch state machine was driven through an illegal transition
    """


class StorageError(TradeTrackerException):
    """
    A storage partition could not be read or written
    """
