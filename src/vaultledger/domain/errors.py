"""Error taxonomy shared by adapters, application services and the API."""
from __future__ import annotations

DEFAULT_COOLDOWN_S = 120.0


class IndexerError(Exception):
    """Base class for every error raised by vaultledger."""


class RpcError(IndexerError):
    """JSON-RPC or HTTP failure that is neither a rate limit nor a finality race."""

    def __init__(self, message: str, *, code: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.endpoint = endpoint


class RateLimitError(RpcError):
    """Provider asked us to slow down (HTTP 429, Retry-After, or a rate-limit message)."""

    def __init__(self, message: str, *, retry_after: float | None = None,
                 code: int | None = None, endpoint: str | None = None) -> None:
        super().__init__(message, code=code, endpoint=endpoint)
        self.retry_after = retry_after

    @property
    def cooldown_s(self) -> float:
        return self.retry_after if self.retry_after is not None else DEFAULT_COOLDOWN_S


class FinalityError(RpcError):
    """Requested blocks are past the node's last accepted block; retry next tick."""


class RangeTooLargeError(RpcError):
    """Provider refused the block span or result count of an eth_getLogs query."""


class RpcConnectivityError(RpcError):
    """Endpoint unreachable (connect/read timeout, DNS, refused)."""


class DecodeError(IndexerError):
    """One log failed structural validation or ABI decoding."""


class DuplicateKeyError(IndexerError):
    """Insert hit a unique identity key; callers treat it as an idempotent no-op."""


class ValidationError(IndexerError):
    """Malformed operator input, e.g. an inverted block range."""


class ScoringUnavailableError(IndexerError):
    """Vault ratings were requested but no scoring runner is wired in."""
