"""
Time-triggered flow sender for tsnprobe.

Emits one FlowPacket per period to a UDP destination. Deadlines are
computed from the start of the run (start + k * period) and the sender
sleeps until each absolute deadline, so time spent in the loop body never
pushes later packets back.
"""

import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import numpy as np

from ..core.clock import ProbeClock
from ..core.errors import DestinationError, SetupError
from ..core.packet import Flow, FlowPacket


@dataclass
class SendReport:
    """Outcome of one sender run."""
    flow: Flow
    packets_sent: int = 0
    next_sequence: int = 0
    elapsed_ns: int = 0
    lateness_mean_us: float = 0.0
    lateness_max_us: float = 0.0
    lateness_p99_us: float = 0.0
    stopped: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def resolve_destination(address: str, port: int) -> Tuple[int, tuple]:
    """Parse an IP literal and port into (address family, sockaddr)."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        raise DestinationError(f"Invalid server IP: {address}")
    if not 0 < port < 65536:
        raise DestinationError(f"Invalid server port: {port}")
    if ip.version == 6:
        return socket.AF_INET6, (str(ip), port, 0, 0)
    return socket.AF_INET, (str(ip), port)


def apply_priority_marking(sock: socket.socket, family: int, tos: int) -> bool:
    """Set the outbound traffic-class byte. Failures are logged, not raised."""
    logger = logging.getLogger(__name__)
    try:
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, getattr(socket, 'IPV6_TCLASS', 67), tos)
        else:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, tos)
    except OSError as e:
        logger.warning(f"Failed to set traffic class 0x{tos:02x}, sending unmarked: {e}")
        return False
    logger.debug(f"Traffic class set to 0x{tos:02x}")
    return True


class FlowSender:
    """Sends a fixed number of timestamped packets for one flow."""

    def __init__(self, destination_address: str, destination_port: int,
                 period_us: int, packet_count: int, flow: Flow,
                 priority_marking: Optional[int] = None,
                 clock: Optional[ProbeClock] = None,
                 sock: Optional[socket.socket] = None):
        if period_us <= 0:
            raise ValueError(f"Period must be positive, got {period_us} us")
        if packet_count < 0:
            raise ValueError(f"Packet count must not be negative, got {packet_count}")

        self.destination_address = destination_address
        self.destination_port = destination_port
        self.period_ns = period_us * 1000
        self.packet_count = packet_count
        self.flow = Flow(flow)
        self.priority_marking = priority_marking
        self.clock = clock or ProbeClock()
        self.logger = logging.getLogger(__name__)

        self._sock = sock
        self._running = False
        self._stop_requested = False

    def stop(self) -> None:
        """Ask a running send loop to finish after the current packet."""
        self._stop_requested = True

    def _open_socket(self, family: int) -> socket.socket:
        try:
            return socket.socket(family, socket.SOCK_DGRAM)
        except OSError as e:
            raise SetupError(f"Failed to create UDP socket: {e}")

    def run(self) -> SendReport:
        """Run the send loop to completion.

        Raises DestinationError or SetupError before any packet is sent;
        transport errors during the loop end the run and are returned in
        the report.
        """
        family, sockaddr = resolve_destination(self.destination_address, self.destination_port)
        owned = self._sock is None
        sock = self._open_socket(family) if owned else self._sock

        report = SendReport(flow=self.flow)
        try:
            if self.priority_marking is not None:
                apply_priority_marking(sock, family, self.priority_marking)

            self.logger.info(
                f"Sending {self.flow.name} to {self.destination_address}:{self.destination_port} "
                f"every {self.period_ns // 1000} us, up to {self.packet_count} packets"
            )
            self._send_loop(sock, sockaddr, report)
        finally:
            if owned:
                sock.close()

        if report.ok:
            self.logger.info(f"Done sending: {report.packets_sent} packets in {report.elapsed_ns / 1e9:.3f} s")
        return report

    def _send_loop(self, sock: socket.socket, sockaddr: tuple, report: SendReport) -> None:
        self._running = True
        lateness = []
        sequence = 0

        start = self.clock.start()
        next_deadline = start
        try:
            for _ in range(self.packet_count):
                if self._stop_requested:
                    self.logger.info(f"Stop requested after {report.packets_sent} packets")
                    report.stopped = True
                    break

                next_deadline += self.period_ns
                self.clock.sleep_until(next_deadline)
                lateness.append(self.clock.monotonic_ns() - next_deadline)

                packet = FlowPacket(flow=self.flow, sequence=sequence,
                                    send_time_ns=self.clock.timestamp_ns())
                sequence += 1
                try:
                    sock.sendto(packet.encode(), sockaddr)
                except OSError as e:
                    report.error = f"sendto failed at sequence {packet.sequence}: {e}"
                    self.logger.error(report.error)
                    break
                report.packets_sent += 1
        finally:
            self._running = False
            report.next_sequence = sequence
            report.elapsed_ns = self.clock.monotonic_ns() - start
            if lateness:
                late_us = np.asarray(lateness, dtype=np.float64) / 1000.0
                report.lateness_mean_us = float(late_us.mean())
                report.lateness_max_us = float(late_us.max())
                report.lateness_p99_us = float(np.percentile(late_us, 99))

    def get_status(self) -> dict:
        """Get current status of the sender."""
        return {
            'running': self._running,
            'flow': self.flow.name,
            'destination': f"{self.destination_address}:{self.destination_port}",
            'period_us': self.period_ns // 1000,
            'packet_count': self.packet_count,
            'priority_marking': self.priority_marking,
            'clock_source': self.clock.source
        }


def run_sender(destination_address: str, destination_port: int, period_us: int,
               packet_count: int, flow_kind: Union[Flow, str],
               priority_marking: Optional[int] = None,
               clock: Optional[ProbeClock] = None) -> SendReport:
    """Send ``packet_count`` packets of ``flow_kind`` spaced ``period_us`` apart."""
    flow = Flow.from_name(flow_kind) if isinstance(flow_kind, str) else Flow(flow_kind)
    sender = FlowSender(destination_address, destination_port, period_us, packet_count,
                        flow, priority_marking=priority_marking, clock=clock)
    return sender.run()
