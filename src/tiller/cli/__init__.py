"""tiller command-line interface."""
