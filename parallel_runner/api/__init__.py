"""HTTP API for parallel-runner."""

from parallel_runner.api.server import create_app

__all__ = ["create_app"]
