"""Lab stock allocation and fulfilment service."""

__version__ = "0.1.0"
