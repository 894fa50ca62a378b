import pytest

from ferry.config import TransferConfig
from ferry.network_io import ChannelTimeout
from ferry.protocol import decode_message, encode_message


class ScriptedChannel:
    """
    In-process stand-in for a dedicated channel.

    recv() pops the next scripted datagram and raises ChannelTimeout once the
    script runs out; everything sent is recorded.
    """

    def __init__(self, inbound=(), peer=("127.0.0.1", 40000)):
        self.inbound = list(inbound)
        self.peer = peer
        self.sent = []
        self.sent_to = []
        self.timeouts = []
        self.closed = False

    def send(self, data):
        self.sent.append(bytes(data))

    def send_to(self, data, addr):
        self.sent_to.append((bytes(data), addr))

    def recv(self, bufsize=65507):
        if not self.inbound:
            raise ChannelTimeout("script exhausted")
        return self.inbound.pop(0)

    def settimeout(self, timeout):
        self.timeouts.append(timeout)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def sent_tags(self):
        """msg_type of every sent datagram that decodes as a control message."""
        tags = []
        for data in self.sent:
            msg = decode_message(data)
            if msg is not None:
                tags.append(msg["msg_type"])
        return tags


def wire(message):
    return encode_message(message)


@pytest.fixture
def transfer_cfg():
    return TransferConfig(
        max_payload=548,
        receive_timeout_sec=1.0,
        selection_timeout_sec=1.0,
        max_restarts=5,
    )


@pytest.fixture
def data_dir(tmp_path):
    """Catalog of the reference scenario: a.txt (10 bytes), b.bin (2000 bytes)."""
    root = tmp_path / "data"
    root.mkdir()
    (root / "a.txt").write_bytes(b"0123456789")
    (root / "b.bin").write_bytes(bytes(i % 251 for i in range(2000)))
    return root
