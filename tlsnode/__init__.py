"""
tlsnode: X.509 hierarchies and TLS endpoints for testing mutual authentication.
"""

from .errors import (
    ConfigurationError,
    HandshakeError,
    HandshakeTimeoutError,
    SigningError,
    TlsNodeError,
    UntrustedChainError,
)
from .models import TlsSettings
from .security import (
    Handshake,
    HandshakeRecorder,
    HeldCertificate,
    HeldCertificateBuilder,
    IdentityConfig,
    KeyPairFactory,
    NodeIdentity,
    TlsNode,
    TlsNodeBuilder,
    TrustAnchorSet,
    TrustStoreConfig,
    build_certificate,
)
from .services import ConfigService, HandshakeTestHarness, LoggingService

__version__ = "0.1.0"

__all__ = [
    'ConfigurationError',
    'HandshakeError',
    'HandshakeTimeoutError',
    'SigningError',
    'TlsNodeError',
    'UntrustedChainError',
    'TlsSettings',
    'Handshake',
    'HandshakeRecorder',
    'HeldCertificate',
    'HeldCertificateBuilder',
    'IdentityConfig',
    'KeyPairFactory',
    'NodeIdentity',
    'TlsNode',
    'TlsNodeBuilder',
    'TrustAnchorSet',
    'TrustStoreConfig',
    'build_certificate',
    'ConfigService',
    'HandshakeTestHarness',
    'LoggingService'
]
