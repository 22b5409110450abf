"""HTTP API for the story pipeline.

Read-mostly REST endpoints over a project's runs and escalations.
"""

from .main import create_app, run_server

__all__ = ["create_app", "run_server"]
