"""LampChat backend: streamed chat turns with durable history."""

__version__ = "0.1.0"
