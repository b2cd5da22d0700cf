"""docrelay - ordered multi-party document workflow engine."""

__version__ = "0.1.0"
