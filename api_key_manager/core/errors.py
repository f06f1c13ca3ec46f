"""
Error taxonomy for API Key Manager.

Pool and registry errors are raised synchronously to the caller.
Billing errors are raised by the remote client and handled by the
aggregation and lifecycle schedulers, which log and retry them.
"""


class KeyManagerError(Exception):
    """Base class for all API Key Manager errors."""


class AlreadyExists(KeyManagerError):
    """Raised when adding a credential that is already known in any state."""

    def __init__(self, value: str):
        super().__init__("API key already exists")
        self.value = value


class NotActive(KeyManagerError):
    """Raised when retiring a credential that is not currently active."""

    def __init__(self, value: str):
        super().__init__("API key is not active")
        self.value = value


class NotFound(KeyManagerError):
    """Raised when a credential is neither active nor retired."""

    def __init__(self, value: str):
        super().__init__("API key not found")
        self.value = value


class NoCredentialsAvailable(KeyManagerError):
    """Raised when the active pool is empty.

    This is an expected outcome, not a fault: the peer should retry later.
    """

    def __init__(self):
        super().__init__("No active API keys available, retry later")


class DuplicateAssignmentAttempt(AssertionError):
    """Raised when a second assignment for the same peer is about to be created.

    The registry serializes every check-then-act, so seeing this means the
    at-most-once invariant is broken (for example, corrupt persisted state).
    """

    def __init__(self, peer_id: str):
        super().__init__(f"Peer {peer_id!r} already holds an assignment")
        self.peer_id = peer_id


class RefreshTooSoon(KeyManagerError):
    """Raised when a manual cost refresh is requested inside the minimum interval."""

    def __init__(self, last_success_at):
        super().__init__(f"Costs were recently refreshed at {last_success_at.isoformat()}")
        self.last_success_at = last_success_at


class BillingError(KeyManagerError):
    """Base class for errors talking to the billing API."""


class BillingNotConfigured(BillingError):
    """Raised when no admin billing secret has been set."""

    def __init__(self):
        super().__init__("Admin API key not configured")


class RemoteUnavailable(BillingError):
    """Connection failure, rate limiting or a server-side error. Retriable."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class RemoteTimeout(BillingError):
    """The billing API did not answer within the configured timeout. Retriable."""


class RemoteRejected(BillingError):
    """The billing API refused the request (auth, validation). Not retriable."""

    def __init__(self, message: str, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def mask_secret(value: str) -> str:
    """Render a secret for logs and listings without revealing it."""
    if not value:
        return ""
    if len(value) <= 11:
        return value[:3] + "***"
    return f"{value[:7]}...{value[-4:]}"
