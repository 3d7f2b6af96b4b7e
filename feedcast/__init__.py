"""Scheduled digest, narration and podcast pipeline."""

__version__ = "0.1.0"
