"""
Handshake harness: runs a server node and a client node against each other
over a loopback socket and checks that both sides saw the same identities.
"""
import enum
import logging
import socket
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import HandshakeError, HandshakeTimeoutError
from ..models.config import TlsSettings
from ..security.handshake import HandshakeRecorder
from ..security.models import CertificateChain, Handshake
from ..security.tls_node import CLIENT, SERVER, TlsNode
from .logging_service import PerformanceMonitor, log_with_context


logger = logging.getLogger(__name__)


class HarnessState(enum.Enum):
    IDLE = "idle"
    SERVER_LISTENING = "server_listening"
    BOTH_CONNECTING = "both_connecting"
    BOTH_HANDSHAKING = "both_handshaking"
    BOTH_COMPLETE = "both_complete"
    FAILED = "failed"


@dataclass(frozen=True)
class HandshakeFailure:
    """A failure raised by one side of the harness."""
    side: str
    error: Exception
    detected_at: float


@dataclass(frozen=True)
class HandshakePair:
    """The handshakes recorded by the server and the client."""
    server: Handshake
    client: Handshake

    def check_consistency(self, server_chain: CertificateChain, client_chain: CertificateChain):
        """
        Check each side saw the other's configured chain and presented its own.

        Args:
            server_chain: Identity chain configured on the server node
            client_chain: Identity chain configured on the client node

        Raises:
            HandshakeError: Listing every mismatch found
        """
        mismatches = []
        if self.server.peer_certificates != tuple(client_chain):
            mismatches.append("server peer chain differs from client identity chain")
        if self.client.peer_certificates != tuple(server_chain):
            mismatches.append("client peer chain differs from server identity chain")
        if self.server.local_certificates != tuple(server_chain):
            mismatches.append("server local chain differs from server identity chain")
        if self.client.local_certificates != tuple(client_chain):
            mismatches.append("client local chain differs from client identity chain")

        if mismatches:
            raise HandshakeError("Inconsistent handshake: " + "; ".join(mismatches))


class HandshakeTestHarness:
    """
    Runs one handshake between two nodes, one worker thread per side.

    The harness owns only the listening socket. Accepted and connected sockets
    belong to the worker that created them and are closed by it; on timeout
    the harness shuts them down so blocked workers fail and exit.
    """

    def __init__(self, server: TlsNode, client: TlsNode, require_client_auth: bool = True,
                 settings: Optional[TlsSettings] = None,
                 performance_monitor: Optional[PerformanceMonitor] = None):
        self.server = server
        self.client = client
        self.require_client_auth = require_client_auth
        self.settings = settings or server.settings
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self.state = HarnessState.IDLE
        self.failures: List[HandshakeFailure] = []
        self._lock = threading.Lock()
        self._connected = 0
        self._listener: Optional[socket.socket] = None
        self._sockets: List[socket.socket] = []
        self._aborted = False

    def run(self) -> HandshakePair:
        """
        Run both sides to completion.

        Returns:
            HandshakePair after checking both sides are consistent

        Raises:
            HandshakeError: The failure detected first, if any side failed
            HandshakeTimeoutError: If a side did not finish in time
        """
        if self.state is not HarnessState.IDLE:
            raise HandshakeError(f"Harness already used (state {self.state.value})")

        timeout = self.settings.handshake_timeout_seconds
        deadline = time.monotonic() + timeout
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="handshake")
        try:
            address = self._listen()
            self._set_state(HarnessState.BOTH_CONNECTING)

            futures = {
                executor.submit(self._run_side, SERVER, self._server_handshake, self._listener): SERVER,
                executor.submit(self._run_side, CLIENT, self._client_handshake, address): CLIENT,
            }
            done, pending = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)

            if pending and any(f.exception() is not None for f in done):
                # The other side usually fails right after; collect it too
                done, pending = wait(futures, timeout=max(0.0, deadline - time.monotonic()))

            first = self._first_failure()
            if pending:
                self._abort_connections()

            if first is not None:
                self._set_state(HarnessState.FAILED)
                log_with_context(
                    logger, 'error', f"{first.side} handshake failed first: {first.error}",
                    side=first.side, error_type=type(first.error).__name__,
                    failed_sides=sorted({f.side for f in self.failures})
                )
                raise first.error

            if pending:
                sides = sorted(futures[f] for f in pending)
                self._set_state(HarnessState.FAILED)
                log_with_context(
                    logger, 'error', f"Handshake timed out after {timeout}s",
                    side=' and '.join(sides), error_type=HandshakeTimeoutError.__name__
                )
                raise HandshakeTimeoutError(
                    f"{' and '.join(sides)} handshake did not complete within {timeout}s"
                )

            results = {futures[f]: f.result() for f in done}
            pair = HandshakePair(server=results[SERVER], client=results[CLIENT])
            try:
                pair.check_consistency(self._identity_chain(self.server), self._identity_chain(self.client))
            except HandshakeError:
                self._set_state(HarnessState.FAILED)
                raise

            self._set_state(HarnessState.BOTH_COMPLETE)
            return pair
        finally:
            self._close_listener()
            executor.shutdown(wait=False, cancel_futures=True)

    def _listen(self) -> Tuple[str, int]:
        host = self.settings.listen_host
        listener = socket.create_server((host, 0), backlog=self.settings.listen_backlog)
        listener.settimeout(self.settings.handshake_timeout_seconds)
        self._listener = listener
        address = listener.getsockname()[:2]
        self._set_state(HarnessState.SERVER_LISTENING)
        logger.debug(f"Harness listening on {address[0]}:{address[1]}")
        return address

    def _close_listener(self):
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    def _run_side(self, side: str, handshake, *args) -> Handshake:
        try:
            with self.performance_monitor.measure_operation(f"{side}_handshake"):
                return handshake(*args)
        except Exception as e:
            failure = HandshakeFailure(side, e, getattr(e, "detected_at", time.monotonic()))
            with self._lock:
                self.failures.append(failure)
            raise

    def _server_handshake(self, listener: socket.socket) -> Handshake:
        try:
            raw_socket, _ = listener.accept()
        except socket.timeout as e:
            raise HandshakeTimeoutError("No client connected before the handshake timeout") from e

        try:
            raw_socket.setblocking(True)
            self._track(raw_socket)
            self._mark_connected(SERVER)
            with self.server.as_server(raw_socket, require_client_auth=self.require_client_auth) as connection:
                return HandshakeRecorder.capture(connection)
        except BaseException:
            raw_socket.close()
            raise

    def _client_handshake(self, address: Tuple[str, int]) -> Handshake:
        try:
            raw_socket = socket.create_connection(address, timeout=self.settings.handshake_timeout_seconds)
        except socket.timeout as e:
            raise HandshakeTimeoutError(f"Could not connect to {address[0]}:{address[1]}") from e

        try:
            raw_socket.setblocking(True)
            self._track(raw_socket)
            self._mark_connected(CLIENT)
            with self.client.as_client(raw_socket) as connection:
                handshake = HandshakeRecorder.capture(connection)
                connection.await_close()
            return handshake
        except BaseException:
            raw_socket.close()
            raise

    def _track(self, raw_socket: socket.socket):
        """Remember a worker socket so a timed out run can unblock it."""
        with self._lock:
            aborted = self._aborted
            if not aborted:
                self._sockets.append(raw_socket)
        if aborted:
            _shutdown_quietly(raw_socket)

    def _abort_connections(self):
        # Blocked reads return EOF, so stalled workers fail and close their sockets
        with self._lock:
            self._aborted = True
            sockets, self._sockets = self._sockets, []
        logger.debug(f"Aborting {len(sockets)} open harness connections")
        for raw_socket in sockets:
            _shutdown_quietly(raw_socket)

    def _mark_connected(self, side: str):
        with self._lock:
            self._connected += 1
            both = self._connected == 2
        logger.debug(f"{side} connected")
        if both:
            self._set_state(HarnessState.BOTH_HANDSHAKING)

    def _set_state(self, state: HarnessState):
        with self._lock:
            if self.state in (HarnessState.BOTH_COMPLETE, HarnessState.FAILED):
                return
            previous, self.state = self.state, state
        logger.debug(f"Harness state {previous.value} -> {state.value}")

    def _first_failure(self) -> Optional[HandshakeFailure]:
        with self._lock:
            return min(self.failures, key=lambda f: f.detected_at, default=None)

    @staticmethod
    def _identity_chain(node: TlsNode) -> CertificateChain:
        return node.identity.chain if node.identity is not None else ()


def _shutdown_quietly(raw_socket: socket.socket):
    try:
        raw_socket.shutdown(socket.SHUT_RDWR)
    except OSError as e:
        # Already closed by its worker
        logger.debug(f"Ignoring error while aborting connection: {e}")
