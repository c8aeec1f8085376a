"""
Logging configuration for tsnprobe.

Latency measurements go to stdout through the ``tsnprobe.measurements``
logger; diagnostics go to stderr so consumers can separate data from errors.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

from .config import LoggingConfig

MEASUREMENT_LOGGER = "tsnprobe.measurements"


def setup_logging(config: LoggingConfig, level: int = logging.INFO) -> None:
    """Setup logging configuration."""
    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Setup root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Clear existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Diagnostics handler
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Measurement handler
    measurement_logger = logging.getLogger(MEASUREMENT_LOGGER)
    for handler in measurement_logger.handlers[:]:
        measurement_logger.removeHandler(handler)
    measurement_handler = logging.StreamHandler(sys.stdout)
    measurement_handler.setFormatter(logging.Formatter('%(message)s'))
    measurement_logger.addHandler(measurement_handler)
    measurement_logger.setLevel(logging.INFO)
    measurement_logger.propagate = False

    # File handler (if configured)
    if config.file:
        try:
            log_path = Path(config.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=config.max_size * 1024 * 1024,  # Convert MB to bytes
                backupCount=config.backup_count
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
            measurement_logger.addHandler(file_handler)

        except OSError as e:
            logging.warning(f"Failed to setup file logging: {e}")

    logging.getLogger('tsnprobe').setLevel(level)

    # Reduce noise from third-party libraries
    logging.getLogger('urllib3').setLevel(logging.WARNING)
    logging.getLogger('influxdb_client').setLevel(logging.WARNING)


def get_measurement_logger() -> logging.Logger:
    return logging.getLogger(MEASUREMENT_LOGGER)
