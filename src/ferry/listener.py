import time
import uuid
import socket
import signal
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional, Tuple

from .catalog import CatalogSnapshot, DirectoryFileStore, FileStore
from .config import FerryConfig, load_config
from .network_io import UdpChannel
from .provider import ProviderSession, SessionResult
from .storage_api import StorageAPI

logger = logging.getLogger(__name__)


class NegotiationListener:
    """
    Accepts first contact on the rendezvous address and hands every
    requester its own dedicated channel and Transfer Session.

    Sessions run on a fixed-size worker pool. When every worker is busy new
    sessions wait in the executor's queue, which is not bounded.
    """

    def __init__(
        self,
        config: FerryConfig,
        file_store: FileStore,
        storage: Optional[StorageAPI] = None,
    ):
        self.config = config
        self.file_store = file_store
        self.storage = storage
        self.host = config.node.host
        self.port = config.node.port
        self.running = False

        self.socket: Optional[socket.socket] = None
        self.accept_thread: Optional[threading.Thread] = None
        self.executor = ThreadPoolExecutor(
            max_workers=config.provider.max_workers,
            thread_name_prefix="ferry-session",
        )

        self._lock = threading.Lock()
        self.active_sessions = 0
        self.results: List[SessionResult] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Bind the rendezvous address and start accepting first contact."""
        try:
            self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.socket.bind((self.host, self.port))
            self.socket.settimeout(0.1)

            self.running = True
            self.accept_thread = threading.Thread(
                target=self._accept_loop, daemon=True
            )
            self.accept_thread.start()

            logger.info("Listening for first contact on %s:%d", *self.address)
        except Exception as e:
            logger.error("Failed to start listener: %s", e)
            self.stop()
            raise

    def stop(self, wait: bool = True) -> None:
        """Stop accepting; with wait, block until running sessions end."""
        self.running = False
        if self.accept_thread and self.accept_thread.is_alive():
            self.accept_thread.join(timeout=1.0)
        if self.socket:
            self.socket.close()
        self.executor.shutdown(wait=wait)
        logger.info("Listener stopped")

    @property
    def address(self) -> Tuple[str, int]:
        return self.socket.getsockname()

    def serve_forever(self) -> None:
        """Run until interrupted; used by the command line."""
        try:
            signal.signal(signal.SIGINT, self._signal_handler)
            signal.signal(signal.SIGTERM, self._signal_handler)
        except ValueError:
            logger.debug("Signal handlers not installed (non-main thread).")

        self.start()
        try:
            while self.running:
                time.sleep(0.5)
        except KeyboardInterrupt:
            logger.info("Received interrupt, shutting down...")
        finally:
            self.stop(wait=False)

    def _signal_handler(self, signum, frame):
        # serve_forever notices the flag and returns normally.
        logger.info("Received signal %s, shutting down...", signum)
        self.running = False

    # ------------------------------------------------------------------
    # Accept loop
    # ------------------------------------------------------------------

    def _accept_loop(self) -> None:
        while self.running:
            try:
                _, peer = self.socket.recvfrom(64)
            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error("Error in accept loop: %s", e)
                continue

            logger.info("First contact from %s:%d", *peer)
            self._dispatch(peer)

    def _dispatch(self, peer: Tuple[str, int]) -> Optional[Future]:
        """Open a dedicated channel for peer and queue its session."""
        try:
            catalog = CatalogSnapshot.capture(self.file_store)
            channel = UdpChannel.open(
                host=self.host,
                peer=peer,
                timeout=self.config.transfer.receive_timeout_sec,
            )
        except OSError as e:
            logger.error("Could not start a session for %s: %s", peer, e)
            return None

        session = ProviderSession(channel, catalog, self.file_store, self.config.transfer)
        try:
            future = self.executor.submit(session.run)
        except RuntimeError as e:
            channel.close()
            logger.error("Could not queue a session for %s: %s", peer, e)
            return None

        with self._lock:
            self.active_sessions += 1
        future.add_done_callback(self._session_finished)
        return future

    def _session_finished(self, future: Future) -> None:
        with self._lock:
            self.active_sessions -= 1

        error = future.exception()
        if error is not None:
            logger.error("Session crashed: %s", error, exc_info=error)
            return

        result = future.result()
        with self._lock:
            self.results.append(result)
        logger.info(
            "Session with %s ended in state %s (%s, %d attempt(s))",
            result.peer,
            result.state,
            result.file_name or "no file",
            result.attempts,
        )

        if self.storage is not None:
            record = result.to_record()
            record["transfer_id"] = uuid.uuid4().hex[:16]
            try:
                self.storage.save_transfer(record)
            except Exception as e:
                logger.error("Failed to record session with %s: %s", result.peer, e)


def create_listener(
    port: Optional[int] = None,
    data_dir: Optional[str] = None,
    config_path: Optional[str] = None,
    max_workers: Optional[int] = None,
    storage: Optional[StorageAPI] = None,
) -> NegotiationListener:
    """Create and configure a listener instance."""
    config = load_config(config_path)

    if port is not None:
        config.node.port = port
    if data_dir is not None:
        config.provider.data_dir = data_dir
    if max_workers is not None:
        config.provider.max_workers = max_workers

    return NegotiationListener(
        config, DirectoryFileStore(config.provider.data_dir), storage
    )
