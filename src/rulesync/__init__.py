"""rulesync - keep notification rules in step with a durable schedule service."""

__version__ = "0.1.0"
