"""Infrastructure layer - persistence, notification providers, observability, lifecycle."""
