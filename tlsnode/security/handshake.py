"""
Read-only snapshots of completed handshakes.
"""
from .models import Handshake
from .tls_node import SecureConnection


class HandshakeRecorder:
    """Captures what each side presented and accepted during a handshake."""

    @staticmethod
    def capture(connection: SecureConnection) -> Handshake:
        """
        Snapshot a completed handshake without touching the session.

        Args:
            connection: Connection returned by TlsNode.as_client/as_server

        Returns:
            Handshake with peer and local chains in presentation order
        """
        return Handshake(
            tls_version=connection.tls_version(),
            cipher_suite=connection.cipher_suite(),
            peer_certificates=connection.peer_certificates(),
            local_certificates=connection.local_certificates()
        )
