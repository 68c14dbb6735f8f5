"""Sales call ingestion and review pipeline."""

__version__ = "1.0.0"
