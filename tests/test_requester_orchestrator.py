from conftest import ScriptedChannel, wire
from ferry.hashing import ContentHasher
from ferry.protocol import (
    FIRST_CONTACT,
    decode_message,
    make_error_msg,
    make_hash_msg,
    make_num_msg,
    make_ready_msg,
    make_sizes_msg,
    packet_lengths,
)
from ferry.requester import DONE, FAILED, RequesterOrchestrator, fixed_selector

RENDEZVOUS = ("127.0.0.1", 4445)

FILES = {
    "a.txt": b"0123456789",
    "b.bin": bytes(i % 251 for i in range(2000)),
}


def provider_script(file_id, files=FILES, max_payload=548, digest=None, tamper=None):
    """Datagrams a well-behaved provider sends for one attempt."""
    names = list(files)
    content = files[names[file_id - 1]]
    packets = []
    offset = 0
    for length in packet_lengths(len(content), max_payload):
        packets.append(content[offset : offset + length])
        offset += length
    if tamper is not None:
        packets = tamper(packets)

    return [
        wire(make_ready_msg(names)),
        wire(make_sizes_msg([len(files[n]) for n in names])),
        wire(make_num_msg(len(packets))),
        wire(make_hash_msg(digest or ContentHasher().digest(content))),
    ] + packets


def flip_first_byte(packets):
    first = bytearray(packets[0])
    first[0] ^= 0xFF
    return [bytes(first)] + packets[1:]


def swap_first_two(packets):
    return [packets[1], packets[0]] + packets[2:]


class ChannelFactory:
    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.channels = []

    def __call__(self):
        channel = ScriptedChannel(self.scripts.pop(0) if self.scripts else [])
        self.channels.append(channel)
        return channel


def make_orchestrator(transfer_cfg, scripts, file_id=2, download_dir=None):
    factory = ChannelFactory(scripts)
    orchestrator = RequesterOrchestrator(
        rendezvous=RENDEZVOUS,
        selector=fixed_selector(file_id),
        config=transfer_cfg,
        download_dir=download_dir,
        channel_factory=factory,
    )
    return orchestrator, factory


def verdict(channel):
    return decode_message(channel.sent[-1])["msg_type"]


def test_reference_scenario_is_received_and_written(tmp_path, transfer_cfg):
    orchestrator, factory = make_orchestrator(
        transfer_cfg, [provider_script(2)], download_dir=str(tmp_path / "dl")
    )

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.attempts == 1
    assert outcome.file_name == "b.bin"
    assert outcome.file_size == 2000
    assert outcome.packet_count == 4
    assert (tmp_path / "dl" / "b.bin").read_bytes() == FILES["b.bin"]

    channel = factory.channels[0]
    assert channel.sent_to == [(FIRST_CONTACT, RENDEZVOUS)]
    # SEND, one OK per packet, then the verdict.
    assert channel.sent_tags() == ["SEND", "OK", "OK", "OK", "OK", "OK"]
    assert channel.sent[0] == b"SEND 2"
    assert channel.closed


def test_flipped_byte_forces_error_never_false_ok(tmp_path, transfer_cfg):
    orchestrator, factory = make_orchestrator(
        transfer_cfg,
        [provider_script(2, tamper=flip_first_byte), provider_script(2)],
        download_dir=str(tmp_path),
    )

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.attempts == 2
    assert verdict(factory.channels[0]) == "ERROR"
    assert verdict(factory.channels[1]) == "OK"
    assert (tmp_path / "b.bin").read_bytes() == FILES["b.bin"]


def test_reordered_packets_are_detected_by_digest(transfer_cfg):
    """Packets carry no sequence number; out-of-order delivery must not pass."""
    orchestrator, factory = make_orchestrator(
        transfer_cfg, [provider_script(2, tamper=swap_first_two), provider_script(2)]
    )

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert verdict(factory.channels[0]) == "ERROR"
    assert len(factory.channels) == 2


def test_many_forced_restarts_then_clean_run(tmp_path, transfer_cfg):
    transfer_cfg.max_restarts = 10
    scripts = [provider_script(2, tamper=flip_first_byte) for _ in range(6)]
    scripts.append(provider_script(2))
    orchestrator, factory = make_orchestrator(transfer_cfg, scripts, download_dir=str(tmp_path))

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.attempts == 7
    assert (tmp_path / "b.bin").read_bytes() == FILES["b.bin"]
    assert all(c.closed for c in factory.channels)
    # Every attempt begins with a fresh rendezvous handshake.
    assert all(c.sent_to == [(FIRST_CONTACT, RENDEZVOUS)] for c in factory.channels)


def test_desynchronized_catalog_restarts_from_contact(transfer_cfg):
    script = provider_script(1)
    desynced = [script[1], script[0]] + script[2:]
    orchestrator, factory = make_orchestrator(transfer_cfg, [desynced, script], file_id=1)

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.attempts == 2
    assert factory.channels[0].sent == []


def test_provider_error_instead_of_metadata_restarts(transfer_cfg):
    script = provider_script(1)
    rejected = script[:2] + [wire(make_error_msg())]
    orchestrator, factory = make_orchestrator(transfer_cfg, [rejected, script], file_id=1)

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.attempts == 2
    assert factory.channels[0].sent_tags() == ["SEND"]


def test_oversized_packet_is_acknowledged_with_error(transfer_cfg):
    script = provider_script(1)
    oversized = script[:4] + [b"01234567890123456789"]
    orchestrator, factory = make_orchestrator(transfer_cfg, [oversized, script], file_id=1)

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.ack_failures == 1
    assert factory.channels[0].sent_tags() == ["SEND", "ERROR"]


def test_lowercase_digest_is_accepted(transfer_cfg):
    digest = ContentHasher().digest(FILES["a.txt"]).lower()
    orchestrator, factory = make_orchestrator(
        transfer_cfg, [provider_script(1, digest=digest)], file_id=1
    )

    assert orchestrator.run().state == DONE
    assert verdict(factory.channels[0]) == "OK"


def test_empty_file_transfer(tmp_path, transfer_cfg):
    files = {"empty.bin": b""}
    orchestrator, factory = make_orchestrator(
        transfer_cfg, [provider_script(1, files=files)], file_id=1, download_dir=str(tmp_path)
    )

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert outcome.packet_count == 0
    assert factory.channels[0].sent_tags() == ["SEND", "OK"]
    assert (tmp_path / "empty.bin").read_bytes() == b""


def test_unreachable_provider_gives_up(transfer_cfg):
    transfer_cfg.max_restarts = 3
    orchestrator, factory = make_orchestrator(transfer_cfg, [])

    outcome = orchestrator.run()

    assert outcome.state == FAILED
    assert outcome.attempts == 4
    assert len(factory.channels) == 4
    assert "gave up" in outcome.error


def test_channel_io_failure_is_fatal(transfer_cfg):
    def broken_factory():
        raise OSError("address already in use")

    orchestrator = RequesterOrchestrator(
        rendezvous=RENDEZVOUS,
        selector=fixed_selector(1),
        config=transfer_cfg,
        channel_factory=broken_factory,
    )

    outcome = orchestrator.run()

    assert outcome.state == FAILED
    assert outcome.attempts == 1
    assert "address already in use" in outcome.error


def test_peer_supplied_name_stays_in_download_dir(tmp_path, transfer_cfg):
    files = {"../escape.txt": b"payload"}
    orchestrator, _ = make_orchestrator(
        transfer_cfg, [provider_script(1, files=files)], file_id=1,
        download_dir=str(tmp_path / "dl"),
    )

    outcome = orchestrator.run()

    assert outcome.state == DONE
    assert (tmp_path / "dl" / "escape.txt").read_bytes() == b"payload"
    assert not (tmp_path / "escape.txt").exists()


def test_unwritable_download_dir_reports_error_not_ok(tmp_path, transfer_cfg):
    blocker = tmp_path / "not-a-dir"
    blocker.write_bytes(b"")
    orchestrator, factory = make_orchestrator(
        transfer_cfg, [provider_script(1)], file_id=1, download_dir=str(blocker)
    )

    outcome = orchestrator.run()

    assert outcome.state == FAILED
    assert outcome.attempts == 1
    assert outcome.output_path is None
    channel = factory.channels[0]
    assert verdict(channel) == "ERROR"
    # One OK per packet, none for the file as a whole.
    assert channel.sent_tags().count("OK") == 1
    assert channel.closed
