"""Document-grounded chat assistant backed by a small persistent retrieval store."""

__version__ = "1.0.0"
