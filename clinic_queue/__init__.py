"""Clinic queue scheduling and wait-time estimation engine."""

__version__ = "0.1.0"
