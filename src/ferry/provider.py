import time
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

from .catalog import CatalogSnapshot, FileDescriptor, FileStore
from .config import TransferConfig
from .hashing import ContentHasher
from .network_io import ChannelTimeout
from .protocol import (
    OK,
    ERROR,
    SEND,
    AckFailure,
    ProtocolError,
    decode_message,
    encode_message,
    iter_packets,
    make_error_msg,
    make_hash_msg,
    make_num_msg,
    make_ready_msg,
    make_sizes_msg,
    packet_count,
    parse_int_payload,
)

logger = logging.getLogger(__name__)

ADVERTISING = "advertising"
AWAIT_SELECTION = "await_selection"
SENDING_METADATA = "sending_metadata"
STREAMING = "streaming"
AWAIT_VERDICT = "await_verdict"
DONE = "done"
FAILED = "failed"


@dataclass(frozen=True)
class TransferPlan:
    selected_id: int
    descriptor: FileDescriptor
    packet_count: int
    digest: str

    @property
    def file_size(self) -> int:
        return self.descriptor.size_bytes


@dataclass
class SessionResult:
    peer: Tuple[str, int]
    state: str = ADVERTISING
    file_name: Optional[str] = None
    file_size: int = 0
    packet_count: int = 0
    digest: str = ""
    attempts: int = 0
    ack_failures: int = 0
    bytes_sent: int = 0
    error: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["role"] = "provider"
        record["peer"] = "%s:%d" % tuple(self.peer)
        return record


class ProviderSession:
    """
    Serves one requester over its dedicated channel.

    Advertises the catalog, waits for a selection, sends the packet count and
    digest, then streams packets stop-and-wait. Any protocol problem restarts
    the exchange from the advertisement; an OSError ends the session, and so
    does a timeout before the peer has answered the latest advertisement.
    """

    def __init__(
        self,
        channel,
        catalog: CatalogSnapshot,
        file_store: FileStore,
        config: TransferConfig,
        hasher: Optional[ContentHasher] = None,
    ):
        self.channel = channel
        self.catalog = catalog
        self.file_store = file_store
        self.config = config
        self.hasher = hasher or ContentHasher(config.hash_algorithm)
        self.state = ADVERTISING
        self.result = SessionResult(peer=channel.peer)
        self._heard_since_advert = False

    # ------------------------------------------------------------------

    def run(self) -> SessionResult:
        """Run the session to DONE or FAILED; the channel is always closed."""
        logger.info(
            "Session with %s started (%d files advertised)",
            self.channel.peer,
            len(self.catalog),
        )
        try:
            with self.channel:
                self._serve()
        except OSError as e:
            self.state = FAILED
            self.result.error = str(e)
            logger.error("Session with %s aborted: %s", self.result.peer, e)

        self.result.state = self.state
        return self.result

    def _serve(self) -> None:
        while True:
            self.result.attempts += 1
            try:
                verdict = self._execute_protocol()
            except AckFailure as e:
                self.result.ack_failures += 1
                logger.warning(
                    "Streaming to %s aborted by acknowledgment failure: %s",
                    self.result.peer,
                    e,
                )
            except ProtocolError as e:
                logger.warning("Protocol error with %s: %s", self.result.peer, e)
            except ChannelTimeout as e:
                if not self._heard_since_advert:
                    # Nothing came back after the catalog: the peer is gone.
                    self.state = FAILED
                    self.result.error = f"peer went silent: {e}"
                    logger.error(
                        "Session with %s failed: %s", self.result.peer, self.result.error
                    )
                    return
                logger.warning("Timed out waiting for %s: %s", self.result.peer, e)
            else:
                if verdict == OK:
                    self.state = DONE
                    logger.info(
                        "Transfer of %s to %s confirmed after %d attempt(s)",
                        self.result.file_name,
                        self.result.peer,
                        self.result.attempts,
                    )
                    return
                logger.warning(
                    "%s reported an integrity failure for %s, restarting",
                    self.result.peer,
                    self.result.file_name,
                )

            max_restarts = self.config.max_restarts
            if max_restarts is not None and self.result.attempts > max_restarts:
                self.state = FAILED
                self.result.error = f"gave up after {self.result.attempts} attempts"
                logger.error(
                    "Session with %s failed: %s", self.result.peer, self.result.error
                )
                return

    def _execute_protocol(self) -> str:
        self._advertise()
        selected_id = self._await_selection()
        plan = self._send_metadata(selected_id)
        self._stream(plan)
        return self._await_verdict()

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _advertise(self) -> None:
        self.state = ADVERTISING
        self._heard_since_advert = False
        self._send_msg(make_ready_msg(self.catalog.names))
        self._send_msg(make_sizes_msg(self.catalog.sizes))

    def _await_selection(self) -> int:
        self.state = AWAIT_SELECTION
        message = self._recv_msg(self.config.selection_timeout_sec)
        try:
            if message is None or message["msg_type"] != SEND:
                raise ProtocolError(f"expected {SEND}, got {_describe(message)}")
            selected_id = parse_int_payload(message)
            if not self.catalog.contains_id(selected_id):
                raise ProtocolError(
                    f"file id {selected_id} outside [1, {len(self.catalog)}]"
                )
        except ProtocolError:
            self._send_msg(make_error_msg())
            raise
        return selected_id

    def _send_metadata(self, selected_id: int) -> TransferPlan:
        self.state = SENDING_METADATA
        descriptor = self.catalog.get(selected_id)
        with self.file_store.open(descriptor.name) as f:
            # Only the snapshot size is streamed; bytes appended since are not.
            digest = self.hasher.digest_stream(f, descriptor.size_bytes)
        plan = TransferPlan(
            selected_id=selected_id,
            descriptor=descriptor,
            packet_count=packet_count(descriptor.size_bytes, self.config.max_payload),
            digest=digest,
        )

        self.result.file_name = descriptor.name
        self.result.file_size = plan.file_size
        self.result.packet_count = plan.packet_count
        self.result.digest = plan.digest

        self._send_msg(make_num_msg(plan.packet_count))
        self._send_msg(make_hash_msg(plan.digest))
        logger.debug(
            "%s selected %s: %d bytes in %d packets",
            self.result.peer,
            descriptor.name,
            plan.file_size,
            plan.packet_count,
        )
        return plan

    def _stream(self, plan: TransferPlan) -> None:
        self.state = STREAMING
        sent = 0
        started = time.monotonic()
        with self.file_store.open(plan.descriptor.name) as f:
            packets = iter_packets(f, plan.file_size, self.config.max_payload)
            for index, packet in enumerate(packets, start=1):
                self.channel.send(packet)
                sent += len(packet)
                self.result.bytes_sent += len(packet)

                ack = self._recv_msg(self.config.receive_timeout_sec)
                if ack is None or ack["msg_type"] != OK:
                    raise AckFailure(
                        f"packet {index}/{plan.packet_count} answered with {_describe(ack)}"
                    )
                logger.debug(
                    "Packet %d/%d acknowledged (%.1f%%)",
                    index,
                    plan.packet_count,
                    sent * 100.0 / plan.file_size,
                )

        logger.info(
            "Streamed %s (%d bytes) to %s in %.0f ms",
            plan.descriptor.name,
            sent,
            self.result.peer,
            (time.monotonic() - started) * 1000.0,
        )

    def _await_verdict(self) -> str:
        self.state = AWAIT_VERDICT
        message = self._recv_msg(self.config.receive_timeout_sec)
        if message is not None and message["msg_type"] in (OK, ERROR):
            return message["msg_type"]
        raise ProtocolError(f"expected a verdict, got {_describe(message)}")

    # ------------------------------------------------------------------

    def _send_msg(self, message: Dict[str, Any]) -> None:
        self.channel.send(encode_message(message))

    def _recv_msg(self, timeout: Optional[float]) -> Optional[Dict[str, Any]]:
        self.channel.settimeout(timeout)
        datagram = self.channel.recv()
        self._heard_since_advert = True
        return decode_message(datagram)


def _describe(message: Optional[Dict[str, Any]]) -> str:
    if message is None:
        return "an unparseable datagram"
    return message["msg_type"]
