import logging
import socket
import threading

import pytest

from tsnprobe.core.config import Config, LoggingConfig
from tsnprobe.core.errors import SetupError
from tsnprobe.core.logger import setup_logging
from tsnprobe.core.packet import UNRECOGNIZED, Flow, FlowPacket
from tsnprobe.receiver.flow_receiver import FlowReceiver, FlowStats, format_peer


class ListSink:
    def __init__(self):
        self.samples = []
        self.closed = False

    def write(self, sample):
        self.samples.append(sample)

    def close(self):
        self.closed = True


def make_receiver(clock, report_every=100, sinks=None):
    config = Config.default()
    config.receiver.report_every = report_every
    return FlowReceiver(0, config=config, clock=clock, sinks=sinks)


def packet(flow, sequence=0, send_time_ns=0):
    return FlowPacket(flow, sequence, send_time_ns).encode()


def test_reports_every_hundredth_packet_per_flow(fake_clock):
    receiver = make_receiver(fake_clock)

    reports = [receiver.handle_datagram(packet(Flow.CONTROL, seq)) for seq in range(250)]

    fired = [r for r in reports if r is not None]
    assert [r.count for r in fired] == [100, 200]
    assert [r.sequence for r in fired] == [99, 199]
    assert receiver.stats[Flow.CONTROL].received == 250
    assert receiver.stats[Flow.LOGGING].received == 0


def test_decimation_is_counted_per_flow(fake_clock):
    receiver = make_receiver(fake_clock, report_every=3)

    flows = [Flow.CONTROL, Flow.LOGGING] * 3
    fired = [receiver.handle_datagram(packet(flow, seq)) for seq, flow in enumerate(flows)]

    reported = [r for r in fired if r is not None]
    assert [r.flow for r in reported] == ["CONTROL", "LOGGING"]


def test_unrecognized_tag_is_reported_every_time(fake_clock, caplog):
    receiver = make_receiver(fake_clock)

    reports = [receiver.handle_datagram(packet(99, seq)) for seq in range(3)]

    assert all(r is not None for r in reports)
    assert [r.flow for r in reports] == [UNRECOGNIZED] * 3
    assert [r.tag for r in reports] == [99] * 3
    assert receiver.unrecognized == 3
    assert receiver.stats[Flow.CONTROL].received == 0
    assert receiver.stats[Flow.LOGGING].received == 0
    assert caplog.text.count("Unrecognized flow tag 99") == 3


@pytest.mark.parametrize("size", [0, 16, 18, 512])
def test_wrong_size_datagrams_are_discarded(fake_clock, size, caplog):
    sink = ListSink()
    receiver = make_receiver(fake_clock, report_every=1, sinks=[sink])

    assert receiver.handle_datagram(b"\x01" * size) is None

    assert receiver.discarded == 1
    assert receiver.unrecognized == 0
    assert all(stats.received == 0 for stats in receiver.stats.values())
    assert sink.samples == []
    assert f"unexpected size: {size} bytes" in caplog.text


def test_latency_is_local_time_minus_send_time(fake_clock):
    receiver = make_receiver(fake_clock, report_every=1)
    receiver.handle_datagram(packet(Flow.CONTROL, 0, 0))
    fake_clock.advance(2_000_000)

    sample = receiver.handle_datagram(packet(Flow.CONTROL, 1, 1_250_000), ("10.0.0.5", 4000))

    assert sample.latency_ns == 750_000
    assert sample.latency_us == 750.0
    assert sample.source == "10.0.0.5:4000"
    assert sample.format() == "[SERVER] flow=CONTROL seq=1 latency=750.000 us"


def test_negative_latency_is_reported_not_rejected(fake_clock):
    receiver = make_receiver(fake_clock, report_every=1)

    sample = receiver.handle_datagram(packet(Flow.LOGGING, 0, 10_000_000))

    assert sample.latency_ns < 0
    assert receiver.stats[Flow.LOGGING].received == 1


def test_samples_reach_sinks_and_measurement_log(fake_clock, caplog):
    caplog.set_level(logging.INFO)
    sink = ListSink()
    receiver = make_receiver(fake_clock, report_every=2, sinks=[sink])

    for seq in range(4):
        receiver.handle_datagram(packet(Flow.CONTROL, seq))
    receiver.handle_datagram(packet(7, 0))

    assert [s.flow for s in sink.samples] == ["CONTROL", "CONTROL", UNRECOGNIZED]
    assert caplog.text.count("[SERVER] flow=CONTROL") == 2

    receiver.close()
    assert sink.closed


def test_status_summarises_latency(fake_clock):
    receiver = make_receiver(fake_clock)
    receiver.start_clock()
    fake_clock.advance(3_000_000)
    for seq, sent in enumerate([2_000_000, 1_000_000, 0]):
        receiver.handle_datagram(packet(Flow.CONTROL, seq, sent))

    status = receiver.get_status()

    control = status['flows']['CONTROL']
    assert control['received'] == 3
    assert control['last_sequence'] == 2
    assert control['min_us'] == pytest.approx(1000.0)
    assert control['max_us'] == pytest.approx(3000.0)
    assert control['mean_us'] == pytest.approx(2000.0)
    assert 'mean_us' not in status['flows']['LOGGING']


def test_flow_stats_window_is_bounded():
    stats = FlowStats(window=2)
    for seq, latency in enumerate([100_000, 200_000, 300_000]):
        stats.record(seq, latency)

    summary = stats.summary()

    assert summary['received'] == 3
    assert summary['min_us'] == pytest.approx(200.0)


class ScriptedSocket:
    """Replays a list of recvfrom outcomes (bytes or exceptions)."""

    def __init__(self, script, on_empty=None):
        self.script = list(script)
        self.on_empty = on_empty

    def getsockname(self):
        return ("0.0.0.0", 9000)

    def recvfrom(self, size):
        if not self.script:
            self.on_empty()
            raise socket.timeout("timed out")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item, ("127.0.0.1", 5000)

    def close(self):
        pass


def test_receive_error_is_fatal_and_returned(fake_clock, caplog):
    receiver = make_receiver(fake_clock, report_every=1)
    receiver._sock = ScriptedSocket([packet(Flow.CONTROL), OSError(9, "Bad file descriptor"), packet(Flow.CONTROL)])

    result = receiver.serve_forever()

    assert not result.ok
    assert "Bad file descriptor" in result.error
    assert result.received == 1
    assert "recvfrom failed" in caplog.text


def test_timeouts_keep_loop_alive_until_stopped(fake_clock):
    receiver = make_receiver(fake_clock)
    receiver._sock = ScriptedSocket(
        [socket.timeout("timed out"), packet(Flow.LOGGING), b"short", packet(42)],
        on_empty=receiver.stop,
    )

    result = receiver.serve_forever()

    assert result.ok
    assert result.received == 1
    assert result.discarded == 1
    assert result.unrecognized == 1


def test_bind_failure_is_setup_error():
    holder = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    holder.bind(("", 0))
    try:
        receiver = FlowReceiver(holder.getsockname()[1])
        with pytest.raises(SetupError):
            receiver.bind()
        assert receiver.port is None
    finally:
        holder.close()


def test_bind_to_ephemeral_port():
    receiver = FlowReceiver(0)
    try:
        receiver.bind()
        assert receiver.port > 0
    finally:
        receiver.close()
    assert receiver.port is None


def test_unrecognized_sample_goes_to_stdout_with_diagnostic_on_stderr(fake_clock, capsys):
    setup_logging(LoggingConfig(), logging.INFO)
    receiver = make_receiver(fake_clock)

    receiver.handle_datagram(packet(99, 4))

    captured = capsys.readouterr()
    assert "[SERVER] flow=UNRECOGNIZED(tag=99) seq=4" in captured.out
    assert "Unrecognized flow tag 99" in captured.err
    assert "Unrecognized flow tag" not in captured.out


def test_stop_before_serve_forever_returns_at_once():
    receiver = FlowReceiver(0)
    receiver.bind()
    try:
        receiver.stop()
        result = receiver.serve_forever()
    finally:
        receiver.close()

    assert result.ok
    assert result.received == 0
    assert not receiver.get_status()['running']


def test_stop_from_another_thread_before_loop_starts():
    receiver = FlowReceiver(0)
    receiver.bind()
    receiver.stop()
    thread = threading.Thread(target=receiver.serve_forever, daemon=True)
    try:
        thread.start()
        thread.join(timeout=2.5)
        assert not thread.is_alive()
    finally:
        receiver.close()


@pytest.mark.parametrize("source, expected", [
    (("10.0.0.5", 4000), "10.0.0.5:4000"),
    (("::ffff:10.0.0.5", 4000, 0, 0), "10.0.0.5:4000"),
    (("fe80::1", 4000, 0, 2), "[fe80::1]:4000"),
])
def test_format_peer(source, expected):
    assert format_peer(source) == expected
