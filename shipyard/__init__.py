# shipyard/__init__.py
"""Autonomous software-delivery orchestrator: resumable stage pipelines plus a scheduler."""

__version__ = "0.4.0"
