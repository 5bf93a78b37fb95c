"""Remote job client implementations."""

from .client import HttpRemoteJobClient

__all__ = ["HttpRemoteJobClient"]
