"""
Probe clock for tsnprobe.

Provides the timestamps embedded in and compared against FlowPacket
send times, and the absolute-deadline sleep used by the sender.

Latency figures are only meaningful when sender and receiver stamp against
the same reference: both ends of a deployment must use the same clock
source, and for ``realtime`` the hosts must be disciplined by PTP.
"""

import logging
import subprocess
import time
from typing import Optional

CLOCK_SOURCES = ("run", "monotonic", "realtime")

# Below this much remaining time the sleeper spins instead of calling time.sleep
_SPIN_THRESHOLD_NS = 200_000
_SLEEP_MARGIN_NS = 1_000_000


def sleep_until(deadline_ns: int) -> None:
    """Block until time.monotonic_ns() reaches deadline_ns.

    Returns immediately if the deadline has already passed.
    """
    while True:
        remaining = deadline_ns - time.monotonic_ns()
        if remaining <= 0:
            return
        if remaining > _SLEEP_MARGIN_NS + _SPIN_THRESHOLD_NS:
            time.sleep((remaining - _SLEEP_MARGIN_NS) / 1e9)
        elif remaining > _SPIN_THRESHOLD_NS:
            time.sleep(0)


class ProbeClock:
    """Timestamp source plus the monotonic schedule used for pacing."""

    def __init__(self, source: str = "run"):
        if source not in CLOCK_SOURCES:
            raise ValueError(f"Unknown clock source {source!r}, expected one of {', '.join(CLOCK_SOURCES)}")
        self.source = source
        self.logger = logging.getLogger(__name__)
        self._start_ns: Optional[int] = None

    def start(self) -> int:
        """Capture the start-of-run epoch and return it on the monotonic scale."""
        self._start_ns = time.monotonic_ns()
        return self._start_ns

    def monotonic_ns(self) -> int:
        return time.monotonic_ns()

    def sleep_until(self, deadline_ns: int) -> None:
        sleep_until(deadline_ns)

    def timestamp_ns(self) -> int:
        """Current time in nanoseconds on the configured reference."""
        if self.source == "realtime":
            return time.time_ns()
        now = time.monotonic_ns()
        if self.source == "monotonic":
            return now
        if self._start_ns is None:
            raise RuntimeError("ProbeClock.start() must be called before timestamp_ns()")
        return now - self._start_ns

    def describe_precondition(self) -> str:
        if self.source == "run":
            return ("latency assumes sender and receiver started at the same instant "
                    "(clock source 'run'); values are offsets, not absolute delays")
        if self.source == "monotonic":
            return "latency assumes sender and receiver share this host's monotonic clock"
        return "latency assumes sender and receiver wall clocks are PTP-synchronized"


def ptp_daemon_running() -> bool:
    """Check whether a PTP daemon (ptp4l) is running on this host."""
    try:
        result = subprocess.run(
            ['pgrep', 'ptp4l'],
            capture_output=True,
            text=True,
            timeout=5
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logging.getLogger(__name__).warning(f"Could not check PTP daemon status: {e}")
        return False
    return result.returncode == 0
