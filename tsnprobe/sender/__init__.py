from .flow_sender import FlowSender, SendReport, run_sender

__all__ = ["FlowSender", "SendReport", "run_sender"]
