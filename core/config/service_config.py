#!/usr/bin/env python3
"""Service configuration for peer services

External HTTP services the group-buy service calls: notification delivery
and the payment gateway.
"""
import os
from dataclasses import dataclass

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default


@dataclass
class ServiceConfig:
    """Peer service endpoints"""

    # ===========================================
    # Notification delivery
    # ===========================================
    notification_service_url: str = "http://localhost:8206"
    notifications_enabled: bool = True

    # ===========================================
    # Payment gateway
    # ===========================================
    payment_gateway_url: str = "http://localhost:8207"
    payment_gateway_api_key: str = ""

    http_timeout_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        return cls(
            notification_service_url=os.getenv("NOTIFICATION_SERVICE_URL", "http://localhost:8206"),
            notifications_enabled=_bool(os.getenv("NOTIFICATIONS_ENABLED", "true")),
            payment_gateway_url=os.getenv("PAYMENT_GATEWAY_URL", "http://localhost:8207"),
            payment_gateway_api_key=os.getenv("PAYMENT_GATEWAY_API_KEY", ""),
            http_timeout_seconds=_float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"), 30.0),
        )
