import logging
import socket

import pytest

from tsnprobe.core.logger import MEASUREMENT_LOGGER


class FakeClock:
    """Deterministic stand-in for ProbeClock.

    sleep_until jumps straight to the deadline (or stays put if already
    late) and records every deadline it was asked to wait for.
    """

    source = "run"

    def __init__(self, start_ns=5_000_000_000):
        self.now = start_ns
        self.deadlines = []
        self._start = None

    def start(self):
        self._start = self.now
        return self.now

    def monotonic_ns(self):
        return self.now

    def sleep_until(self, deadline_ns):
        self.deadlines.append(deadline_ns)
        self.now = max(self.now, deadline_ns)

    def timestamp_ns(self):
        return self.now - self._start

    def advance(self, ns):
        self.now += ns

    def describe_precondition(self):
        return "fake clock"


class RecordingSocket:
    """UDP socket double that records sends and can burn fake time per send."""

    def __init__(self, clock=None, cost_ns=0, fail_on_send=None, on_send=None):
        self.clock = clock
        self.cost_ns = cost_ns
        self.fail_on_send = fail_on_send
        self.on_send = on_send
        self.sent = []
        self.send_times = []
        self.options = []
        self.closed = False
        self.setsockopt_error = None

    def setsockopt(self, level, option, value):
        if self.setsockopt_error is not None:
            raise self.setsockopt_error
        self.options.append((level, option, value))

    def sendto(self, data, address):
        if self.fail_on_send is not None and len(self.sent) + 1 == self.fail_on_send:
            raise OSError(101, "Network is unreachable")
        if self.clock is not None:
            self.send_times.append(self.clock.now)
            self.clock.advance(self.cost_ns)
        self.sent.append((data, address))
        if self.on_send is not None:
            self.on_send(len(self.sent))
        return len(data)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def udp_listener():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    yield sock
    sock.close()


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo setup_logging() so handlers bound to captured streams do not leak."""
    root = logging.getLogger()
    measurement = logging.getLogger(MEASUREMENT_LOGGER)
    saved_level = root.level
    saved_handlers = root.handlers[:]
    yield
    for handler in root.handlers[:]:
        if handler not in saved_handlers and isinstance(handler, (logging.StreamHandler, logging.FileHandler)) \
                and type(handler).__module__.startswith('logging'):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(saved_level)
    for handler in measurement.handlers[:]:
        measurement.removeHandler(handler)
    measurement.setLevel(logging.NOTSET)
    measurement.propagate = True
    logging.getLogger('tsnprobe').setLevel(logging.NOTSET)
