"""Application layer - use cases, caches and background jobs."""
