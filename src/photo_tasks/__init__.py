"""Two-tier retry and recovery engine for paid photo generation tasks."""

__version__ = "0.1.0"
