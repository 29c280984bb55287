"""
TLS nodes: endpoints that trust a set of anchors and present an identity.
"""
import logging
import os
import ssl
import tempfile
import time
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.hazmat.primitives import serialization
from OpenSSL import SSL, crypto

from ..errors import ConfigurationError, HandshakeError, UntrustedChainError
from ..models.config import TlsSettings
from .held_certificate import HeldCertificate
from .identity import IdentityConfig, KeyManager, validate_identity
from .models import CertificateChain, NodeIdentity
from .trust_store import ChainVerifier, TrustAnchorSet, TrustStoreConfig


logger = logging.getLogger(__name__)

CLIENT = "client"
SERVER = "server"

_OPENSSL_VERSIONS = {
    "TLSv1.2": SSL.TLS1_2_VERSION,
    "TLSv1.3": SSL.TLS1_3_VERSION,
}

_STDLIB_VERSIONS = {
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}

# X509_V_ERR_* codes reported to the verify callback
_VALIDITY_ERRORS = {
    9: "certificate is not yet valid",
    10: "certificate has expired",
}
_TRUST_ERRORS = {
    2: "unable to get issuer certificate",
    7: "certificate signature failure",
    18: "self-signed certificate",
    19: "self-signed certificate in certificate chain",
    20: "unable to get local issuer certificate",
    21: "unable to verify the first certificate",
    24: "invalid CA certificate",
    25: "path length constraint exceeded",
}


@dataclass(frozen=True)
class VerifyFailure:
    """First certificate rejected by the TLS engine during a handshake."""
    error_number: int
    depth: int
    subject: str
    detected_at: float

    def to_error(self) -> HandshakeError:
        if self.error_number in _VALIDITY_ERRORS:
            return HandshakeError(
                f"{_VALIDITY_ERRORS[self.error_number]}: {self.subject}",
                detected_at=self.detected_at
            )
        reason = _TRUST_ERRORS.get(self.error_number, f"verify error {self.error_number}")
        return UntrustedChainError(
            f"{reason}: {self.subject} (depth {self.depth})",
            detected_at=self.detected_at
        )


def _verify_callback(connection, certificate, error_number, depth, ok):
    if not ok:
        secure = connection.get_app_data()
        if secure is not None and secure.verify_failure is None:
            secure.verify_failure = VerifyFailure(
                error_number=error_number,
                depth=depth,
                subject=certificate.to_cryptography().subject.rfc4514_string(),
                detected_at=time.monotonic()
            )
    return bool(ok)


class SecureConnection:
    """A socket after a completed TLS handshake. Owns the raw socket."""

    def __init__(self, connection: SSL.Connection, raw_socket, role: str, node: 'TlsNode'):
        self.connection = connection
        self.raw_socket = raw_socket
        self.role = role
        self.node = node
        self.verify_failure: Optional[VerifyFailure] = None
        self._peer_certificates: Optional[CertificateChain] = None
        self._closed = False

    def __enter__(self) -> 'SecureConnection':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def do_handshake(self):
        try:
            self.connection.do_handshake()
        except (SSL.Error, OSError) as e:
            raise self._failure(e) from e

    def tls_version(self) -> str:
        return self.connection.get_protocol_version_name()

    def cipher_suite(self) -> str:
        return self.connection.get_cipher_name() or ""

    def peer_certificates(self) -> CertificateChain:
        """Chain presented by the peer, leaf first."""
        if self._peer_certificates is None:
            self._peer_certificates = self._read_peer_certificates()
        return self._peer_certificates

    def local_certificates(self) -> CertificateChain:
        """Chain this side presented, leaf first."""
        if self.node.identity is None or self.connection.get_certificate() is None:
            return ()
        return self.node.identity.chain

    def _read_peer_certificates(self) -> CertificateChain:
        leaf = self.connection.get_peer_certificate()
        if leaf is None:
            return ()
        leaf = leaf.to_cryptography()
        chain = [c.to_cryptography() for c in self.connection.get_peer_cert_chain() or []]
        # Servers see the client chain without its leaf
        if not chain or chain[0] != leaf:
            chain.insert(0, leaf)
        return tuple(chain)

    def await_close(self):
        """
        Read until the peer closes the session.

        Raises:
            HandshakeError: If the peer aborted instead of closing cleanly
        """
        try:
            while self.connection.recv(4096):
                pass
        except SSL.ZeroReturnError:
            return
        except SSL.SysCallError as e:
            if e.args and e.args[0] == -1:
                logger.debug(f"{self.role} peer closed without close_notify")
                return
            raise HandshakeError(f"{self.role} connection failed: {e}") from e
        except SSL.Error as e:
            if "unexpected eof" in str(e).lower():
                logger.debug(f"{self.role} peer closed without close_notify")
                return
            raise self._failure(e) from e

    def close(self):
        """Send close_notify and close the raw socket."""
        if self._closed:
            return
        self._closed = True
        try:
            self.connection.shutdown()
        except (SSL.Error, OSError) as e:
            logger.debug(f"Ignoring error while shutting down {self.role} connection: {e}")
        finally:
            self.raw_socket.close()

    def _failure(self, error: Exception) -> HandshakeError:
        if self.verify_failure is not None:
            return self.verify_failure.to_error()
        return HandshakeError(f"{self.role} handshake failed: {error}")


class TlsNode:
    """
    A TLS endpoint that verifies peers against a fixed set of trust anchors
    and presents at most one identity, in either client or server role.

    Nodes are immutable and may be shared between threads.
    """

    def __init__(self, trust_anchors: TrustAnchorSet, identity: Optional[NodeIdentity] = None,
                 settings: Optional[TlsSettings] = None):
        if not isinstance(trust_anchors, TrustAnchorSet):
            raise ConfigurationError("trust_anchors must be a TrustAnchorSet")
        if identity is not None:
            if not isinstance(identity, NodeIdentity):
                raise ConfigurationError("identity must be a NodeIdentity")
            validate_identity(identity)

        self.settings = settings or TlsSettings()
        self.trust_anchors = trust_anchors
        self.identity = identity
        self._verifier = ChainVerifier(trust_anchors)
        self._key_manager = KeyManager(identity)

        self._client_context = self._new_context(SSL.VERIFY_PEER)
        self._server_contexts: Dict[bool, SSL.Context] = {
            False: self._new_context(SSL.VERIFY_PEER, server_side=True),
            True: self._new_context(SSL.VERIFY_PEER | SSL.VERIFY_FAIL_IF_NO_PEER_CERT, server_side=True),
        }

        subject = identity.leaf.subject.rfc4514_string() if identity else None
        logger.info(f"Built TLS node: {len(trust_anchors)} trust anchors, identity={subject}")

    @classmethod
    def build(cls, trust_anchors: TrustAnchorSet, identity: Optional[NodeIdentity] = None,
              settings: Optional[TlsSettings] = None) -> 'TlsNode':
        return cls(trust_anchors, identity, settings)

    @staticmethod
    def builder(settings: Optional[TlsSettings] = None) -> 'TlsNodeBuilder':
        return TlsNodeBuilder(settings)

    def key_manager(self) -> KeyManager:
        return self._key_manager

    def trust_manager(self) -> ChainVerifier:
        return self._verifier

    def as_client(self, raw_socket) -> SecureConnection:
        """
        Perform a client handshake over a connected socket.

        The socket is owned by the returned connection, or closed if the
        handshake fails.

        Raises:
            UntrustedChainError: If the server chain is not trusted
            HandshakeError: On any other handshake failure
        """
        return self._handshake(raw_socket, self._client_context, CLIENT)

    def as_server(self, raw_socket, require_client_auth: bool = False) -> SecureConnection:
        """
        Perform a server handshake over an accepted socket.

        Client certificates are always requested and verified when presented;
        require_client_auth makes them mandatory.

        Raises:
            UntrustedChainError: If the client chain is not trusted
            HandshakeError: On any other handshake failure
        """
        return self._handshake(raw_socket, self._server_contexts[require_client_auth], SERVER)

    def _handshake(self, raw_socket, context: SSL.Context, role: str) -> SecureConnection:
        try:
            connection = SSL.Connection(context, raw_socket)
            secure = SecureConnection(connection, raw_socket, role, self)
            connection.set_app_data(secure)
            if role == CLIENT:
                connection.set_connect_state()
            else:
                connection.set_accept_state()

            secure.do_handshake()

            peer_chain = secure.peer_certificates()
            if peer_chain or role == CLIENT:
                self._verifier.verify(peer_chain)

            logger.debug(
                f"{role} handshake complete: {secure.tls_version()} {secure.cipher_suite()}, "
                f"{len(peer_chain)} peer certificates"
            )
            return secure
        except HandshakeError as e:
            logger.warning(f"{role} handshake failed: {e}")
            raw_socket.close()
            raise
        except Exception:
            raw_socket.close()
            raise

    def _new_context(self, verify_mode: int, server_side: bool = False) -> SSL.Context:
        try:
            context = SSL.Context(SSL.TLS_METHOD)
            context.set_min_proto_version(_OPENSSL_VERSIONS[self.settings.min_tls_version])

            if self.identity is not None:
                context.use_privatekey(self.identity.private_key)
                context.use_certificate(self.identity.leaf)
                for intermediate in self.identity.chain[1:]:
                    context.add_extra_chain_cert(intermediate)
                context.check_privatekey()

            store = context.get_cert_store()
            # Any anchor terminates a chain, not only self-signed roots
            store.set_flags(crypto.X509StoreFlags.PARTIAL_CHAIN)
            for anchor in self.trust_anchors:
                store.add_cert(crypto.X509.from_cryptography(anchor))

            if server_side:
                context.set_session_id(b"tlsnode")
            context.set_verify(verify_mode, _verify_callback)
        except SSL.Error as e:
            raise ConfigurationError(f"Failed to configure TLS context: {e}") from e
        return context

    def ssl_context(self, server_side: bool = False, require_client_auth: bool = False) -> ssl.SSLContext:
        """
        Equivalent standard-library context, for interop with ``ssl`` peers.

        Hostnames are not checked; peers are verified against the trust anchors.
        """
        if server_side:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            context.verify_mode = ssl.CERT_REQUIRED if require_client_auth else ssl.CERT_OPTIONAL
        else:
            context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            context.check_hostname = False
            context.verify_mode = ssl.CERT_REQUIRED

        context.minimum_version = _STDLIB_VERSIONS[self.settings.min_tls_version]
        context.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN

        if len(self.trust_anchors):
            context.load_verify_locations(cadata=self.trust_anchors.to_pem())

        if self.identity is not None:
            self._load_identity(context)

        return context

    def _load_identity(self, context: ssl.SSLContext):
        # load_cert_chain only reads from files
        with tempfile.TemporaryDirectory() as directory:
            cert_path = os.path.join(directory, "chain.pem")
            key_path = os.path.join(directory, "key.pem")

            with open(cert_path, 'wb') as f:
                for cert in self.identity.chain:
                    f.write(cert.public_bytes(serialization.Encoding.PEM))

            with open(key_path, 'wb') as f:
                f.write(self.identity.private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption()
                ))

            context.load_cert_chain(certfile=cert_path, keyfile=key_path)


class TlsNodeBuilder:
    """Collects trust anchors and an identity, then builds a TlsNode."""

    def __init__(self, settings: Optional[TlsSettings] = None):
        self.settings = settings
        self._trust_store = TrustStoreConfig()
        self._identity = IdentityConfig()

    def add_trusted_certificate(self, certificate) -> 'TlsNodeBuilder':
        self._trust_store.add_trusted_certificate(certificate)
        return self

    def held_certificate(self, held: HeldCertificate, *intermediates) -> 'TlsNodeBuilder':
        self._identity.held_certificate(held, *intermediates)
        return self

    def identity(self, private_key, chain) -> 'TlsNodeBuilder':
        self._identity.identity(private_key, chain)
        return self

    def build(self) -> TlsNode:
        return TlsNode(self._trust_store.build(), self._identity.build(), self.settings)
