"""
Protocol helpers for Ferry.

Control messages are in-memory dictionaries ({"msg_type", "payload"}) built
by the make_*_msg helpers below and carried on the wire as a single ASCII
datagram "<TAG> <payload>". File content travels as raw packets with no
header at all: the Nth datagram of a streaming phase is packet N, so the
protocol relies on datagrams of one dedicated channel arriving in send order.
Reordering is not repaired here; it surfaces as a digest mismatch.
"""

import logging
from typing import Any, BinaryIO, Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)

READY = "READY"
SIZES = "SIZES"
SEND = "SEND"
NUM = "NUM"
HASH = "HASH"
OK = "OK"
ERROR = "ERROR"

CONTROL_TAGS = frozenset({READY, SIZES, SEND, NUM, HASH, OK, ERROR})

# Largest payload per packet; keeps a datagram under common path MTU once
# IP and UDP headers are added.
MAX_PAYLOAD = 548

# Largest datagram UDP over IPv4 can carry.
MAX_DATAGRAM = 65507

FIRST_CONTACT = b"\x01"

LIST_SEPARATOR = ";"


class ProtocolError(Exception):
    """The peer sent something the state machine did not expect."""


class AckFailure(ProtocolError):
    """A packet acknowledgment other than OK arrived during streaming."""


class IntegrityError(ProtocolError):
    """Reassembled content does not match the advertised digest."""


# ----------------------------------------------------------------------
# Message builders
# ----------------------------------------------------------------------

def _make_msg(msg_type: str, payload: Any = "") -> Dict[str, Any]:
    return {"msg_type": msg_type, "payload": str(payload)}


def make_ready_msg(names: Iterable[str]) -> Dict[str, Any]:
    return _make_msg(READY, LIST_SEPARATOR.join(names))


def make_sizes_msg(sizes: Iterable[int]) -> Dict[str, Any]:
    return _make_msg(SIZES, LIST_SEPARATOR.join(str(int(s)) for s in sizes))


def make_send_msg(file_id: int) -> Dict[str, Any]:
    return _make_msg(SEND, int(file_id))


def make_num_msg(packet_count: int) -> Dict[str, Any]:
    return _make_msg(NUM, int(packet_count))


def make_hash_msg(digest: str) -> Dict[str, Any]:
    return _make_msg(HASH, digest)


def make_ok_msg() -> Dict[str, Any]:
    return _make_msg(OK)


def make_error_msg() -> Dict[str, Any]:
    return _make_msg(ERROR)


# ----------------------------------------------------------------------
# Wire format
# ----------------------------------------------------------------------

def encode_message(message: Dict[str, Any]) -> bytes:
    """Serialize a control message to a datagram."""
    msg_type = message["msg_type"]
    if msg_type not in CONTROL_TAGS:
        raise ValueError(f"Unknown message type: {msg_type}")

    payload = message.get("payload", "")
    text = f"{msg_type} {payload}" if payload else msg_type
    data = text.encode("utf-8")
    if len(data) > MAX_DATAGRAM:
        raise ValueError(f"Message too large: {len(data)} bytes")
    return data


def decode_message(data: bytes) -> Optional[Dict[str, Any]]:
    """
    Deserialize a datagram into a control message.

    Splits on the first space only, so payloads may themselves contain
    spaces. Returns None for anything that is not a known control message.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        logger.debug("Discarding undecodable control datagram (%d bytes)", len(data))
        return None

    msg_type, _, payload = text.partition(" ")
    if msg_type not in CONTROL_TAGS:
        logger.debug("Unknown control tag %r", msg_type[:16])
        return None

    return {"msg_type": msg_type, "payload": payload}


def parse_int_payload(message: Dict[str, Any]) -> int:
    """Integer payload of SEND/NUM messages; raises ProtocolError if malformed."""
    payload = message.get("payload", "").strip()
    try:
        return int(payload)
    except ValueError:
        raise ProtocolError(
            f"{message.get('msg_type')} payload is not an integer: {payload[:32]!r}"
        ) from None


def split_list_payload(payload: str) -> List[str]:
    """Split a READY/SIZES payload; an empty payload is an empty list."""
    if payload == "":
        return []
    return payload.split(LIST_SEPARATOR)


# ----------------------------------------------------------------------
# Packet framing
# ----------------------------------------------------------------------

def packet_count(file_size: int, max_payload: int = MAX_PAYLOAD) -> int:
    """ceil(file_size / max_payload); 0 for an empty file."""
    return (file_size + max_payload - 1) // max_payload


def packet_lengths(file_size: int, max_payload: int = MAX_PAYLOAD) -> List[int]:
    """Length of every packet of a file, the last one being the remainder."""
    count = packet_count(file_size, max_payload)
    if count == 0:
        return []
    return [max_payload] * (count - 1) + [file_size - (count - 1) * max_payload]


def iter_packets(
    stream: BinaryIO, file_size: int, max_payload: int = MAX_PAYLOAD
) -> Iterator[bytes]:
    """
    Read a file of known size as a sequence of packets.

    Raises OSError if the stream ends before file_size bytes were read.
    """
    for index, length in enumerate(packet_lengths(file_size, max_payload), start=1):
        chunk = stream.read(length)
        if len(chunk) != length:
            raise OSError(
                f"Short read on packet {index}: expected {length} bytes, got {len(chunk)}"
            )
        yield chunk
