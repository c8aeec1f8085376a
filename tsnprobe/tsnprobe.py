#!/usr/bin/env python3
"""
tsnprobe - UDP latency probe for prioritized flows.
Command-line entry point for the receiver (server) and sender (client) roles.
"""

import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import click

from .core.clock import ProbeClock
from .core.config import Config
from .core.errors import SetupError
from .core.logger import get_measurement_logger, setup_logging
from .core.packet import Flow
from .receiver.flow_receiver import FlowReceiver
from .sender.flow_sender import FlowSender


@contextmanager
def stop_on_signals(component):
    """Route SIGINT/SIGTERM to ``component.stop()`` while the block runs."""
    def signal_handler(signum, frame):
        logging.info(f"Received signal {signum}, shutting down...")
        component.stop()

    previous = {sig: signal.signal(sig, signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def load_config(config: Optional[str]) -> Config:
    if config is None:
        cfg = Config.default()
    else:
        config_path = Path(config)
        if not config_path.exists():
            raise ValueError(f"Configuration file {config} not found")
        cfg = Config.from_file(config_path)
    cfg.validate()
    return cfg


@click.group(no_args_is_help=False)
@click.option('--config', '-c', default=None, help='Configuration file path (TOML)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool):
    """tsnprobe - UDP latency probe for control and logging flows"""
    try:
        cfg = load_config(config)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    log_level = logging.DEBUG if verbose else getattr(logging, cfg.logging.level.upper())
    setup_logging(cfg.logging, log_level)
    if config:
        logging.info(f"Configuration loaded from {config}")
    ctx.obj = cfg


@main.command()
@click.argument('port', type=click.IntRange(0, 65535))
@click.pass_obj
def server(cfg: Config, port: int):
    """Receive probe packets on UDP PORT and report latency."""
    sinks = []
    if cfg.influxdb.enabled:
        from .storage.influx_sink import InfluxLatencySink
        sinks.append(InfluxLatencySink(cfg))

    receiver = FlowReceiver(port, config=cfg, sinks=sinks)
    try:
        receiver.bind()
    except SetupError as e:
        logging.error(str(e))
        receiver.close()
        sys.exit(1)

    try:
        with stop_on_signals(receiver):
            result = receiver.serve_forever()
        print_summary(receiver)
    finally:
        receiver.close()

    if not result.ok:
        logging.error(f"Receiver stopped: {result.error}")
        sys.exit(1)


def print_summary(receiver: FlowReceiver) -> None:
    measurements = get_measurement_logger()
    status = receiver.get_status()
    for flow_name, summary in status['flows'].items():
        line = f"[SERVER] summary flow={flow_name} received={summary['received']}"
        if 'mean_us' in summary:
            line += (f" min={summary['min_us']:.3f} mean={summary['mean_us']:.3f}"
                     f" p99={summary['p99_us']:.3f} max={summary['max_us']:.3f} us")
        measurements.info(line)
    measurements.info(
        f"[SERVER] summary unrecognized={status['unrecognized']} discarded={status['discarded']}"
    )


@main.command()
@click.argument('flow', type=click.Choice(['control', 'logging']))
@click.argument('server_ip')
@click.argument('port', type=click.IntRange(1, 65535))
@click.argument('period_us', type=click.IntRange(min=1))
@click.argument('num_packets', type=click.IntRange(min=0))
@click.pass_obj
def client(cfg: Config, flow: str, server_ip: str, port: int, period_us: int, num_packets: int):
    """Send NUM_PACKETS packets of FLOW to SERVER_IP:PORT every PERIOD_US microseconds."""
    flow_kind = Flow.from_name(flow)
    sender = FlowSender(
        server_ip, port, period_us, num_packets, flow_kind,
        priority_marking=cfg.tos_for(flow_kind),
        clock=ProbeClock(cfg.clock.source)
    )

    try:
        with stop_on_signals(sender):
            report = sender.run()
    except SetupError as e:
        logging.error(str(e))
        sys.exit(1)

    if report.packets_sent:
        logging.info(
            f"Schedule lateness: mean={report.lateness_mean_us:.1f} us "
            f"p99={report.lateness_p99_us:.1f} us max={report.lateness_max_us:.1f} us"
        )
    if not report.ok:
        sys.exit(1)


if __name__ == '__main__':
    main()
