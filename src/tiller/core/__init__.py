"""Core primitives shared by every tiller layer: errors, results, logging, secrets, settings."""
