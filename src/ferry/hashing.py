import hashlib
from dataclasses import dataclass
from typing import BinaryIO, Optional

_READ_SIZE = 64 * 1024


@dataclass(frozen=True)
class ContentHasher:
    """Whole-content digest, rendered as upper-case hex."""

    algorithm: str = "md5"

    def __post_init__(self):
        # Fail at construction rather than in the middle of a session.
        hashlib.new(self.algorithm)

    def digest(self, data: bytes) -> str:
        h = hashlib.new(self.algorithm)
        h.update(data)
        return h.hexdigest().upper()

    def digest_stream(self, stream: BinaryIO, size: Optional[int] = None) -> str:
        """Digest the rest of stream, or only its next size bytes."""
        h = hashlib.new(self.algorithm)
        remaining = size
        while remaining is None or remaining > 0:
            want = _READ_SIZE if remaining is None else min(_READ_SIZE, remaining)
            block = stream.read(want)
            if not block:
                break
            h.update(block)
            if remaining is not None:
                remaining -= len(block)
        return h.hexdigest().upper()


def digests_match(expected: str, actual: str) -> bool:
    """Exact comparison of two hex digests, ignoring case."""
    return expected.strip().upper() == actual.strip().upper()
