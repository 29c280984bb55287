"""
Error taxonomy for certificate synthesis, node configuration and handshakes.
"""
import time
from typing import Optional


class TlsNodeError(Exception):
    """Base class for all errors raised by tlsnode."""


class SigningError(TlsNodeError):
    """The requested issuer is not allowed to sign the certificate."""


class ConfigurationError(TlsNodeError, ValueError):
    """Malformed identity, trust set or settings, detected at build time."""


class HandshakeError(TlsNodeError):
    """A TLS handshake failed. Never retried automatically."""

    def __init__(self, message: str, detected_at: Optional[float] = None):
        super().__init__(message)
        # Monotonic time at which the failure was first observed
        self.detected_at = detected_at if detected_at is not None else time.monotonic()


class UntrustedChainError(HandshakeError):
    """The peer chain failed verification against the trust anchors."""


class HandshakeTimeoutError(HandshakeError):
    """One side of a handshake never completed within the allowed time."""
