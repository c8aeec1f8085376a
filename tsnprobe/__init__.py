"""
tsnprobe - UDP latency probe for prioritized flows

A client emits timestamped datagrams at a fixed period, tagged as either
high-priority control or best-effort logging traffic, and a server
measures one-way latency per flow, so the effect of DSCP/TOS marking on
a shared link can be observed directly.
"""

__version__ = "1.0.0"
__author__ = "tsnprobe Authors"
__license__ = "MIT"

from .core.config import Config
from .core.logger import setup_logging
from .core.packet import PACKET_SIZE, Flow, FlowPacket
from .receiver.flow_receiver import FlowReceiver, run_receiver
from .sender.flow_sender import FlowSender, run_sender

__all__ = [
    "Config",
    "setup_logging",
    "PACKET_SIZE",
    "Flow",
    "FlowPacket",
    "FlowReceiver",
    "run_receiver",
    "FlowSender",
    "run_sender",
]
