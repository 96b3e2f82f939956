"""Core infrastructure - config, logging, retry, cancellation, errors."""
