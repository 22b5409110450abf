"""API routes."""

from . import escalations, runs

__all__ = ["escalations", "runs"]
