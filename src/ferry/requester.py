import os
import time
import uuid
import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional, Tuple

from .catalog import CatalogSnapshot, FileDescriptor
from .config import TransferConfig
from .hashing import ContentHasher, digests_match
from .network_io import ChannelTimeout, UdpChannel
from .protocol import (
    READY,
    SIZES,
    NUM,
    HASH,
    FIRST_CONTACT,
    AckFailure,
    IntegrityError,
    ProtocolError,
    decode_message,
    encode_message,
    make_error_msg,
    make_ok_msg,
    make_send_msg,
    parse_int_payload,
)

logger = logging.getLogger(__name__)

CONTACTING = "contacting"
AWAIT_CATALOG = "await_catalog"
SELECTING = "selecting"
AWAIT_METADATA = "await_metadata"
RECEIVING = "receiving"
VERIFYING = "verifying"
REPORTING = "reporting"
DONE = "done"
FAILED = "failed"

Selector = Callable[[CatalogSnapshot], int]


@dataclass
class TransferOutcome:
    provider: Tuple[str, int]
    state: str = CONTACTING
    file_name: Optional[str] = None
    file_size: int = 0
    packet_count: int = 0
    digest: str = ""
    attempts: int = 0
    ack_failures: int = 0
    output_path: Optional[str] = None
    error: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["role"] = "requester"
        record["peer"] = "%s:%d" % tuple(self.provider)
        record.pop("provider")
        record.pop("output_path")
        return record


# ----------------------------------------------------------------------
# Selectors
# ----------------------------------------------------------------------

def show_catalog(catalog: CatalogSnapshot) -> None:
    for file_id, descriptor in enumerate(catalog, start=1):
        print(f"{file_id}) File Name: {descriptor.name} | File Size: {descriptor.size_bytes}")


def console_selector(catalog: CatalogSnapshot) -> int:
    """Print the catalog and read an id from stdin; -1 if it is not a number."""
    show_catalog(catalog)
    answer = input("Select one of the above files typing its number (id): ")
    try:
        return int(answer.strip())
    except ValueError:
        return -1


def fixed_selector(file_id: int) -> Selector:
    """Selector for headless runs: always picks the same id."""
    def select(catalog: CatalogSnapshot) -> int:
        return file_id
    return select


# ----------------------------------------------------------------------

class RequesterOrchestrator:
    """
    Fetches one file from a provider reached through its rendezvous address.

    Every failed attempt (protocol error, timeout, digest mismatch) discards
    what was received and starts over with a fresh channel and a new first
    contact, up to config.max_restarts restarts.
    """

    def __init__(
        self,
        rendezvous: Tuple[str, int],
        selector: Selector,
        config: TransferConfig,
        download_dir: Optional[str] = None,
        channel_factory: Optional[Callable[[], Any]] = None,
        hasher: Optional[ContentHasher] = None,
    ):
        self.rendezvous = rendezvous
        self.selector = selector
        self.config = config
        self.download_dir = download_dir
        self.channel_factory = channel_factory or self._open_channel
        self.hasher = hasher or ContentHasher(config.hash_algorithm)
        self.state = CONTACTING
        self.outcome = TransferOutcome(provider=rendezvous)

    def _open_channel(self) -> UdpChannel:
        return UdpChannel.open(timeout=self.config.receive_timeout_sec)

    # ------------------------------------------------------------------

    def run(self) -> TransferOutcome:
        """Repeat the protocol until a verified transfer or a terminal failure."""
        try:
            self._communicate()
        except OSError as e:
            self.state = FAILED
            self.outcome.error = str(e)
            logger.error("Transfer from %s aborted: %s", self.rendezvous, e)

        self.outcome.state = self.state
        return self.outcome

    def _communicate(self) -> None:
        while True:
            self.outcome.attempts += 1
            try:
                with self.channel_factory() as channel:
                    descriptor, output_path = self._request_file(channel)
            except AckFailure as e:
                self.outcome.ack_failures += 1
                logger.warning("Rejected a packet from %s: %s", self.rendezvous, e)
            except IntegrityError as e:
                logger.warning("Integrity check failed: %s", e)
            except ProtocolError as e:
                logger.warning("Protocol error with %s: %s", self.rendezvous, e)
            except ChannelTimeout as e:
                logger.warning("Timed out waiting for %s: %s", self.rendezvous, e)
            else:
                self.outcome.output_path = output_path
                self.state = DONE
                logger.info(
                    "Received %s (%d bytes) after %d attempt(s)",
                    descriptor.name,
                    descriptor.size_bytes,
                    self.outcome.attempts,
                )
                return

            max_restarts = self.config.max_restarts
            if max_restarts is not None and self.outcome.attempts > max_restarts:
                self.state = FAILED
                self.outcome.error = f"gave up after {self.outcome.attempts} attempts"
                logger.error(
                    "Transfer from %s failed: %s", self.rendezvous, self.outcome.error
                )
                return

    def _request_file(self, channel) -> Tuple[FileDescriptor, Optional[str]]:
        self.state = CONTACTING
        channel.send_to(FIRST_CONTACT, self.rendezvous)

        self.state = AWAIT_CATALOG
        ready = self._expect(channel, READY)
        sizes = self._expect(channel, SIZES)
        try:
            catalog = CatalogSnapshot.from_wire(ready["payload"], sizes["payload"])
        except ValueError as e:
            raise ProtocolError(f"malformed catalog: {e}") from None
        logger.debug("Catalog from %s: %d file(s)", channel.peer, len(catalog))

        self.state = SELECTING
        file_id = self.selector(catalog)
        channel.send(encode_message(make_send_msg(file_id)))

        self.state = AWAIT_METADATA
        num_packs = parse_int_payload(self._expect(channel, NUM))
        expected_digest = self._expect(channel, HASH)["payload"]
        descriptor = catalog.get(file_id)
        if descriptor is None or num_packs < 0:
            raise ProtocolError(f"metadata does not match selection {file_id}")

        self.outcome.file_name = descriptor.name
        self.outcome.file_size = descriptor.size_bytes
        self.outcome.packet_count = num_packs
        self.outcome.digest = expected_digest

        content = self._receive_packets(channel, descriptor, num_packs)

        self.state = VERIFYING
        actual_digest = self.hasher.digest(content)

        self.state = REPORTING
        if not digests_match(expected_digest, actual_digest):
            channel.send(encode_message(make_error_msg()))
            raise IntegrityError(
                f"{descriptor.name}: expected digest {expected_digest}, got {actual_digest}"
            )
        try:
            output_path = self._store(descriptor, content)
        except OSError:
            # The provider must not hear OK for a file that was never saved.
            channel.send(encode_message(make_error_msg()))
            raise
        channel.send(encode_message(make_ok_msg()))
        return descriptor, output_path

    def _receive_packets(self, channel, descriptor: FileDescriptor, num_packs: int) -> bytes:
        self.state = RECEIVING
        received = bytearray()
        started = time.monotonic()

        for index in range(1, num_packs + 1):
            packet = channel.recv()
            if not packet or len(received) + len(packet) > descriptor.size_bytes:
                channel.send(encode_message(make_error_msg()))
                raise AckFailure(
                    f"packet {index}/{num_packs} of {len(packet)} bytes does not fit "
                    f"{descriptor.size_bytes} bytes ({len(received)} received)"
                )
            received.extend(packet)
            channel.send(encode_message(make_ok_msg()))
            logger.debug(
                "Packet %d/%d received (%.1f%%)",
                index,
                num_packs,
                len(received) * 100.0 / descriptor.size_bytes,
            )

        logger.debug(
            "Received %d packets in %.0f ms",
            num_packs,
            (time.monotonic() - started) * 1000.0,
        )
        return bytes(received)

    def _expect(self, channel, msg_type: str) -> Dict[str, Any]:
        message = decode_message(channel.recv())
        if message is None or message["msg_type"] != msg_type:
            got = "an unparseable datagram" if message is None else message["msg_type"]
            raise ProtocolError(f"expected {msg_type}, got {got}")
        return message

    def _store(self, descriptor: FileDescriptor, content: bytes) -> Optional[str]:
        if self.download_dir is None:
            return None
        os.makedirs(self.download_dir, exist_ok=True)
        # The name comes from the peer; never let it leave download_dir.
        name = os.path.basename(descriptor.name) or uuid.uuid4().hex[:16]
        path = os.path.join(self.download_dir, name)
        with open(path, "wb") as f:
            f.write(content)
        return path
