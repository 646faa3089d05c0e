"""
Campaign Delivery Service Clients

HTTP clients for the services this engine depends on.
"""

from .content_client import ContentClient
from .notification_client import NotificationClient

__all__ = ["ContentClient", "NotificationClient"]
