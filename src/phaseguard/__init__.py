"""Workflow enforcement hooks for phased development lifecycles."""

__version__ = "0.1.0"
