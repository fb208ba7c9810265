"""Error taxonomy shared by the upload pipeline, ledger submitter and CLI.

Three families:

* :class:`ConfigurationError` -- bad flags, missing credentials, cache
  problems.  Raised before any network call and never retried.
* :class:`UploadError` -- per-item storage failures.  Transient subclasses
  are retried by the scheduler; fatal subclasses mark the item failed.
* :class:`LedgerError` -- transaction submission failures.  Transient
  subclasses are retried by the submitter; fatal ones abort the pass.
"""

from __future__ import annotations


class MintctlError(Exception):
    """Base class for all errors raised by mintctl."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(MintctlError):
    """Missing or contradictory options; fatal, surfaced before any network call."""


class CacheNotFoundError(ConfigurationError):
    """No cache file exists for the requested (name, env) pair."""


class CacheCorruptError(ConfigurationError):
    """The cache file exists but cannot be parsed or validated."""


# ---------------------------------------------------------------------------
# Storage uploads
# ---------------------------------------------------------------------------


class UploadError(MintctlError):
    """Raised when a storage backend fails to store an item."""


class UploadTransientError(UploadError):
    """A failure that may succeed on retry after backoff."""


class RateLimitedError(UploadTransientError):
    """The backend throttled the request (HTTP 429 or SlowDown)."""


class NetworkError(UploadTransientError):
    """Connection failure, 5xx response or an upload call that timed out."""


class UploadFatalError(UploadError):
    """A failure that will not go away by retrying the same payload."""


class PayloadRejectedError(UploadFatalError):
    """The backend (or local validation) refused the item's content."""


class CredentialsRejectedError(UploadFatalError):
    """The backend refused the configured credentials."""


# ---------------------------------------------------------------------------
# Ledger transactions
# ---------------------------------------------------------------------------


class LedgerError(MintctlError):
    """Raised when a transaction cannot be submitted or confirmed."""


class LedgerTransientError(LedgerError):
    """Submission or confirmation timed out, or the node was temporarily unable to serve."""


class LedgerFatalError(LedgerError):
    """The cluster rejected the transaction deterministically.

    Attributes:
        reason: The rejection reason reported by the RPC node.
    """

    def __init__(self, message: str, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or message


class AlreadyProcessedError(LedgerError):
    """The cluster reports the transaction as already processed."""
