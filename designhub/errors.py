"""Exception types raised by the Trello sync subsystem."""


class SyncError(Exception):
    """Base class for card-sync failures."""


class NotFoundError(SyncError):
    """A referenced design request or client does not exist."""


class ConfigurationError(SyncError):
    """A client's Trello credentials are missing or incomplete."""


class SyncStateError(SyncError):
    """The requested operation conflicts with the request's current sync state."""


class PersistenceError(SyncError):
    """A local database write failed after the provider call."""


class ProviderError(SyncError):
    """
    Trello HTTP or network failure.

    status_code is the HTTP status of the rejected call, or 0 when the request
    never produced a response (timeout, DNS, connection reset).
    """

    def __init__(self, message, status_code=0, response_body=None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    @property
    def is_network_error(self):
        return self.status_code == 0

    def to_dict(self):
        return {
            "error": str(self),
            "status_code": self.status_code,
            "response_body": self.response_body,
        }
