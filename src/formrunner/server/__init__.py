"""HTTP control surface."""

from formrunner.server.app import ControlServer, create_app

__all__ = ["ControlServer", "create_app"]
