"""
Group-Buy Service Clients

Clients for calling other services.
"""

from .notification_client import NotificationClient
from .payment_gateway_client import PaymentGatewayClient

__all__ = [
    "NotificationClient",
    "PaymentGatewayClient",
]
