from .flow_receiver import FlowReceiver, FlowStats, LatencySample, ReceiverResult, run_receiver

__all__ = ["FlowReceiver", "FlowStats", "LatencySample", "ReceiverResult", "run_receiver"]
