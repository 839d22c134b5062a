"""Error taxonomy shared by the gateway, the provider adapters and both transports."""

from __future__ import annotations


class EmbeddingError(Exception):
    """Base exception for embedding gateway errors."""

    retryable: bool = False
    http_status: int = 500


class InvalidInputError(EmbeddingError):
    """Raised when a request is missing fields or carries malformed values."""

    http_status = 400


class DimensionMismatchError(EmbeddingError):
    """Raised when two vectors of different length are compared."""

    http_status = 400

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimensions differ: {left} != {right}")
        self.left = left
        self.right = right


class DegenerateVectorError(EmbeddingError):
    """Raised when cosine similarity is requested for a zero-magnitude vector."""

    http_status = 422


class ProviderError(EmbeddingError):
    """Raised when the embedding provider fails or returns an unusable body."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        provider: str | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable


class ProviderNotConfiguredError(ProviderError):
    """Raised on first use when the provider has no credential."""


class CircuitOpenError(ProviderError):
    """Raised when the provider circuit breaker is rejecting calls."""


class ProviderTimeoutError(EmbeddingError):
    """Raised when a provider call exceeds its time budget."""

    retryable = True
    http_status = 504

    def __init__(self, message: str, timeout: float | None = None, provider: str | None = None):
        super().__init__(message)
        self.timeout = timeout
        self.provider = provider
