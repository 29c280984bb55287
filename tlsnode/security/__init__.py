"""
Security package: certificate synthesis, trust, identity and TLS nodes.
"""
from .models import CertificateInfo, Handshake, IssuedBy, NodeIdentity, SelfSigned
from .key_pairs import KeyPair, KeyPairFactory
from .held_certificate import HeldCertificate, HeldCertificateBuilder, build_certificate
from .trust_store import ChainVerifier, TrustAnchorSet, TrustStoreConfig
from .identity import IdentityConfig, KeyManager
from .tls_node import SecureConnection, TlsNode, TlsNodeBuilder
from .handshake import HandshakeRecorder

__all__ = [
    'CertificateInfo',
    'Handshake',
    'IssuedBy',
    'NodeIdentity',
    'SelfSigned',
    'KeyPair',
    'KeyPairFactory',
    'HeldCertificate',
    'HeldCertificateBuilder',
    'build_certificate',
    'ChainVerifier',
    'TrustAnchorSet',
    'TrustStoreConfig',
    'IdentityConfig',
    'KeyManager',
    'SecureConnection',
    'TlsNode',
    'TlsNodeBuilder',
    'HandshakeRecorder'
]
