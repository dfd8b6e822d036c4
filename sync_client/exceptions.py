class SyncClientError(Exception):
    """Base class for client-side sync failures."""


class TransientNetworkError(SyncClientError):
    """Timeout, refused connection or a server status worth retrying. Retried with backoff."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(SyncClientError):
    """The server answered with something the client cannot use. Retried as a batch-level failure."""

    def __init__(self, message, status_code=None, body=None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DuplicateOperationError(SyncClientError):
    pass


class OperationNotFound(SyncClientError):
    pass


class InvalidTransitionError(SyncClientError):
    pass
