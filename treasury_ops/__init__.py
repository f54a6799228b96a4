"""Treasury operations backend: processing tasks, bank sync and notifications."""

__version__ = "1.0.0"
