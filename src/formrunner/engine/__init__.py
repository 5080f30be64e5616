"""Execution engine: retries, the per-run orchestrator, and run control."""

from formrunner.engine.control import ControlService
from formrunner.engine.orchestrator import Orchestrator
from formrunner.engine.retry import RetryConfig, RetryController

__all__ = ["ControlService", "Orchestrator", "RetryConfig", "RetryController"]
