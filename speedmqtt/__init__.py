"""Application bootstrap helpers."""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .logging_setup import configure_logging
from .measurements.models import Measurement
from .measurements.speedtest_runner import run_speedtest_probe
from .publisher import MqttPublisher, PublishOutcome
from .scheduler import SchedulerService

__version__ = "0.1.0"

LOGGER = logging.getLogger(__name__)


class ApplicationContext:
    """Holds shared singletons for the agent."""

    def __init__(self, config: AppConfig, publisher: Optional[MqttPublisher] = None, probe=None):
        self.config = config
        self.publisher = publisher or MqttPublisher(config.mqtt)
        self.probe = probe or partial(run_speedtest_probe, config)
        self.scheduler = SchedulerService(
            config.scheduler.interval_seconds,
            probe=self.probe,
            publish=self.publish,
        )
        self._shut_down = False

    def publish(self, measurement: Measurement) -> PublishOutcome:
        return self.publisher.publish(self.config.mqtt.topic, measurement, self.config.mqtt.qos)

    def start(self) -> None:
        """Connect to the broker; raises ``ConnectError`` once retries are exhausted."""
        self.publisher.connect_with_retries()

    def run(self) -> None:
        self.start()
        try:
            self.scheduler.run()
        finally:
            self.shutdown()

    def stop(self) -> None:
        self.scheduler.stop()

    def shutdown(self) -> None:
        if self._shut_down:
            return
        self._shut_down = True
        self.scheduler.shutdown()
        self.publisher.shutdown()


def bootstrap(config_path: Optional[str] = None) -> ApplicationContext:
    """Load configuration, set up logging and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    configure_logging(config)
    return ApplicationContext(config)
