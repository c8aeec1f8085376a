"""
InfluxDB export of latency samples for tsnprobe.
"""

import logging
import socket
from typing import Optional

from influxdb_client import InfluxDBClient, Point
from influxdb_client.client.write_api import SYNCHRONOUS

from ..core.config import Config
from ..receiver.flow_receiver import LatencySample


class InfluxLatencySink:
    """Writes each reported LatencySample as a ``flow_latency`` point."""

    def __init__(self, config: Config):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.host_name = config.network.host_name or socket.gethostname()

        self._client: Optional[InfluxDBClient] = None
        self._write_api = None

        self._connect()

    @property
    def connected(self) -> bool:
        return self._write_api is not None

    def _connect(self) -> None:
        """Initialize InfluxDB connection."""
        try:
            self._client = InfluxDBClient(
                url=self.config.influxdb.url,
                token=self.config.influxdb.token,
                org=self.config.influxdb.organization
            )

            if not self._client.ping():
                raise ConnectionError(f"no response from {self.config.influxdb.url}")

            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

            self.logger.info("InfluxDB connection established")

        except Exception as e:
            self.logger.error(f"Failed to connect to InfluxDB, latency export disabled: {e}")
            if self._client is not None:
                self._client.close()
            self._client = None
            self._write_api = None

    def write(self, sample: LatencySample) -> None:
        if not self._write_api:
            return

        point = Point("flow_latency") \
            .field("latency_us", sample.latency_us) \
            .field("sequence", sample.sequence) \
            .tag("flow", sample.flow) \
            .tag("host", self.host_name)
        if sample.source:
            point = point.tag("source", sample.source)

        try:
            self._write_api.write(
                bucket=self.config.influxdb.bucket,
                record=point
            )
        except Exception as e:
            self.logger.error(f"Failed to send latency sample to InfluxDB: {e}")

    def close(self) -> None:
        if self._write_api is not None:
            self._write_api.close()
            self._write_api = None
        if self._client is not None:
            self._client.close()
            self._client = None
