"""Core building blocks: errors, logging, settings, retries and models."""
