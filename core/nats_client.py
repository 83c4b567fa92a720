"""
NATS Client for Python Microservices

Thin async wrapper over nats-py used to publish service events.
"""

import json
import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import nats
from nats.aio.client import Client as NATSClient

from core.config.infra_config import InfraConfig

logger = logging.getLogger(__name__)


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal, datetime and Enum types"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


class Event:
    """Event envelope"""

    def __init__(
        self,
        event_type: str,
        source: str,
        data: Dict[str, Any],
        subject: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.type = event_type
        self.source = source
        self.data = data
        self.subject = subject
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.metadata = metadata or {}
        self.version = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "subject": self.subject,
            "timestamp": self.timestamp,
            "data": self.data,
            "metadata": self.metadata,
            "version": self.version,
        }


class NATSEventBus:
    """
    NATS event bus using nats-py.

    Subjects are the event type strings (e.g. "group_buy.campaign.locked").
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize NATS Event Bus.

        Args:
            service_name: Name of the service (sent as the connection name)
            config: Optional infrastructure config
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self.servers = self.config.nats_servers
        self._client: Optional[NATSClient] = None

        logger.info(f"NATS EventBus initialized: {self.servers}")

    async def connect(self):
        """Connect to NATS"""
        try:
            self._client = await nats.connect(
                servers=[self.servers],
                name=self.service_name,
            )
            logger.info(f"Connected to NATS as {self.service_name}")
        except Exception as e:
            logger.error(f"Failed to connect to NATS: {e}")
            raise

    async def publish(self, subject: str, data: Dict[str, Any]) -> None:
        """Publish a JSON payload on a subject"""
        if not self.is_connected:
            raise RuntimeError("NATS client is not connected")
        payload = json.dumps(data, cls=DecimalEncoder).encode("utf-8")
        await self._client.publish(subject, payload)

    async def close(self):
        """Drain and close the NATS connection"""
        if self._client is not None:
            try:
                await self._client.drain()
            finally:
                self._client = None
        logger.info("Disconnected from NATS")

    @property
    def is_connected(self) -> bool:
        """Check if connected to NATS"""
        return self._client is not None and self._client.is_connected
