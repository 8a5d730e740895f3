"""Hotswap - Single-host container deployment with automatic rollback.

This package replaces a running service container with a new image version,
verifies the new instance through its HTTP health endpoint, and restores the
previous instance when verification fails.
"""

__version__ = "0.1.0"
