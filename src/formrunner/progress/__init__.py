"""Progress publishing: status snapshots and log lines for observers."""

from formrunner.progress.buffer import LogBuffer
from formrunner.progress.console import ConsoleReporter
from formrunner.progress.publisher import ProgressPublisher, Subscription

__all__ = ["ConsoleReporter", "LogBuffer", "ProgressPublisher", "Subscription"]
