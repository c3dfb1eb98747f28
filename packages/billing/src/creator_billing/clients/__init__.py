"""Adapters for external collaborators."""

from creator_billing.clients.platform_api import PlatformAPIClient

__all__ = ["PlatformAPIClient"]
