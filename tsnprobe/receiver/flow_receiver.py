"""
Latency-measuring flow receiver for tsnprobe.

Receives FlowPacket datagrams on a UDP port, classifies them by flow tag
and computes latency as the local clock minus the embedded send time.
One sample per ``report_every`` packets of each flow is reported; packets
with an unknown flow tag are reported every time.
"""

import logging
import socket
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

import numpy as np

from ..core.clock import ProbeClock, ptp_daemon_running
from ..core.config import Config
from ..core.errors import PacketSizeError, SetupError
from ..core.logger import get_measurement_logger
from ..core.packet import UNRECOGNIZED, Flow, FlowPacket

RECV_BUFFER_BYTES = 65535
RECV_TIMEOUT = 1.0


def format_peer(source: tuple) -> str:
    """host:port for a recvfrom address, unwrapping IPv4-mapped IPv6 hosts."""
    host, port = source[0], source[1]
    if host.startswith("::ffff:") and "." in host:
        host = host[len("::ffff:"):]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class LatencySample:
    """A reported latency measurement."""
    flow: str
    tag: int
    sequence: int
    latency_ns: int
    count: int
    source: Optional[str] = None

    @property
    def latency_us(self) -> float:
        return self.latency_ns / 1000.0

    def format(self) -> str:
        flow = self.flow if self.flow != UNRECOGNIZED else f"{UNRECOGNIZED}(tag={self.tag})"
        return f"[SERVER] flow={flow} seq={self.sequence} latency={self.latency_us:.3f} us"


@dataclass
class ReceiverResult:
    """Terminal outcome of a receive loop."""
    received: int
    discarded: int
    unrecognized: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FlowStats:
    """Running counters and a window of recent latencies for one flow."""

    def __init__(self, window: int = 1000):
        self.received = 0
        self.last_sequence: Optional[int] = None
        self._latencies = deque(maxlen=window)

    def record(self, sequence: int, latency_ns: int) -> int:
        self.received += 1
        self.last_sequence = sequence
        self._latencies.append(latency_ns)
        return self.received

    def summary(self) -> dict:
        summary = {'received': self.received, 'last_sequence': self.last_sequence}
        if self._latencies:
            latencies_us = np.asarray(self._latencies, dtype=np.float64) / 1000.0
            summary.update({
                'min_us': float(latencies_us.min()),
                'mean_us': float(latencies_us.mean()),
                'max_us': float(latencies_us.max()),
                'p99_us': float(np.percentile(latencies_us, 99)),
            })
        return summary


class FlowReceiver:
    """Receives probe packets and reports per-flow latency."""

    def __init__(self, listen_port: int, config: Optional[Config] = None,
                 clock: Optional[ProbeClock] = None, sinks: Optional[Iterable] = None):
        self.config = config or Config.default()
        self.listen_port = listen_port
        self.clock = clock or ProbeClock(self.config.clock.source)
        self.report_every = self.config.receiver.report_every
        self.sinks: List = list(sinks or [])
        self.logger = logging.getLogger(__name__)
        self._measurements = get_measurement_logger()

        self.stats: Dict[Flow, FlowStats] = {
            flow: FlowStats(self.config.receiver.latency_window) for flow in Flow
        }
        self.discarded = 0
        self.unrecognized = 0

        self._sock: Optional[socket.socket] = None
        self._running = False
        self._stop_requested = False
        self._started = False

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, useful when listening on port 0."""
        if self._sock is None:
            return None
        return self._sock.getsockname()[1]

    def _open_socket(self) -> socket.socket:
        """Dual-stack IPv6 socket where the host supports it, IPv4 otherwise."""
        if socket.has_ipv6:
            try:
                sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM)
            except OSError as e:
                self.logger.info(f"IPv6 unavailable, listening on IPv4 only: {e}")
            else:
                try:
                    sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                    return sock
                except OSError as e:
                    sock.close()
                    self.logger.info(f"Dual-stack socket unsupported, listening on IPv4 only: {e}")
        try:
            return socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as e:
            raise SetupError(f"Failed to create UDP socket: {e}")

    def bind(self) -> None:
        """Create the socket and bind it to all IPv4 and IPv6 interfaces."""
        sock = self._open_socket()

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self.logger.warning(f"Failed to set SO_REUSEADDR: {e}")

        if self.config.receiver.recv_buffer_size:
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, self.config.receiver.recv_buffer_size)
            except OSError as e:
                self.logger.warning(f"Failed to set SO_RCVBUF: {e}")

        try:
            sock.bind(("::" if sock.family == socket.AF_INET6 else "", self.listen_port))
        except OSError as e:
            sock.close()
            raise SetupError(f"Failed to bind UDP port {self.listen_port}: {e}")

        sock.settimeout(RECV_TIMEOUT)
        self._sock = sock
        self.start_clock()

    def start_clock(self) -> None:
        """Capture the start-of-run epoch; called by bind() or on the first datagram."""
        self.clock.start()
        self._started = True
        self.logger.info(f"Clock source '{self.clock.source}': {self.clock.describe_precondition()}")
        if self.clock.source == "realtime" and not ptp_daemon_running():
            self.logger.warning("PTP daemon (ptp4l) not running; cross-host latency may be meaningless")

    def handle_datagram(self, data: bytes, source: Optional[tuple] = None) -> Optional[LatencySample]:
        """Process one datagram. Returns the sample if one was reported."""
        if not self._started:
            self.start_clock()

        try:
            packet = FlowPacket.decode(data)
        except PacketSizeError:
            self.discarded += 1
            self.logger.warning(f"Received unexpected size: {len(data)} bytes")
            return None

        latency_ns = self.clock.timestamp_ns() - packet.send_time_ns
        peer = format_peer(source) if source else None

        flow = packet.classify()
        if flow is None:
            self.unrecognized += 1
            sample = LatencySample(UNRECOGNIZED, packet.flow, packet.sequence,
                                   latency_ns, self.unrecognized, peer)
            self.logger.warning(f"Unrecognized flow tag {packet.flow} from {peer or 'unknown'} (seq={packet.sequence})")
            self._measurements.info(sample.format())
            self._publish(sample)
            return sample

        count = self.stats[flow].record(packet.sequence, latency_ns)
        if count % self.report_every != 0:
            return None

        sample = LatencySample(flow.name, packet.flow, packet.sequence, latency_ns, count, peer)
        self._measurements.info(sample.format())
        self._publish(sample)
        return sample

    def _publish(self, sample: LatencySample) -> None:
        for sink in self.sinks:
            sink.write(sample)

    def serve_forever(self) -> ReceiverResult:
        """Receive until stop() is called or the socket fails."""
        if self._sock is None:
            self.bind()

        sock = self._sock
        self._running = True
        self.logger.info(f"Listening on UDP port {self.port}...")
        try:
            while not self._stop_requested:
                try:
                    data, source = sock.recvfrom(RECV_BUFFER_BYTES)
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._stop_requested:
                        break
                    self.logger.error(f"recvfrom failed: {e}")
                    return self._result(error=str(e))
                self.handle_datagram(data, source)
        finally:
            self._running = False

        return self._result()

    def _result(self, error: Optional[str] = None) -> ReceiverResult:
        return ReceiverResult(
            received=sum(stats.received for stats in self.stats.values()),
            discarded=self.discarded,
            unrecognized=self.unrecognized,
            error=error
        )

    def stop(self) -> None:
        """Stop the receive loop within one receive timeout, or before it starts."""
        self._stop_requested = True

    def close(self) -> None:
        self._stop_requested = True
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        for sink in self.sinks:
            sink.close()

    def get_status(self) -> dict:
        """Get current status of the receiver."""
        return {
            'running': self._running,
            'port': self.port,
            'clock_source': self.clock.source,
            'flows': {flow.name: stats.summary() for flow, stats in self.stats.items()},
            'unrecognized': self.unrecognized,
            'discarded': self.discarded
        }


def run_receiver(listen_port: int, config: Optional[Config] = None,
                 sinks: Optional[Iterable] = None) -> ReceiverResult:
    """Bind to ``listen_port`` and receive until a fatal transport error."""
    receiver = FlowReceiver(listen_port, config=config, sinks=sinks)
    receiver.bind()
    try:
        return receiver.serve_forever()
    finally:
        receiver.close()
