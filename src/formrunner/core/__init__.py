"""Core infrastructure: configuration, logging, checkpoint persistence."""
