"""Workflow scheduling and trigger-execution engine."""

__version__ = "1.0.0"
