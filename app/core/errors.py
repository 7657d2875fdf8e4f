"""AdPulse — Sync Error Taxonomy.

Every failure an adapter or the token manager can surface maps to one of these
classes. The worker pool only looks at ``retryable`` to pick between the
queue's backoff path and a terminal failure.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for provider-facing sync failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: int = 0,
    ):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class AuthExpired(SyncError):
    """The stored credential was rejected. User action is required."""


class ReauthRequired(AuthExpired):
    """No refresh path exists; the user has to run the OAuth flow again."""


class RateLimited(SyncError):
    """Provider throttled the request."""

    retryable = True

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: int = 429,
        retry_after: Optional[float] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, provider, status_code)


class ProviderUnavailable(SyncError):
    """Provider is down, slow, or unreachable."""

    retryable = True


class MalformedResponse(SyncError):
    """Provider broke its response contract."""


class Unsupported(SyncError):
    """The provider does not offer the requested capability."""


class IntegrationNotFound(SyncError):
    """Integration id does not resolve to a stored row."""


class DuplicateJob(Exception):
    """A job with the same dedupe key is already waiting or active."""

    def __init__(self, dedupe_key: str, existing_job_id: Optional[int] = None):
        self.dedupe_key = dedupe_key
        self.existing_job_id = existing_job_id
        super().__init__(f"Job with dedupe key '{dedupe_key}' already in flight")
