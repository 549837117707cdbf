"""JSON HTTP API for managing apps and their push notification jobs."""

__version__ = "0.1.0"