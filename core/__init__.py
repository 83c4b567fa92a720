#!/usr/bin/env python3
"""
Core Module for Microservices Architecture

Shared infrastructure components for the group-buy microservices.

COMPONENTS:
    - config/: Dataclass configuration loaded from the environment (python-dotenv)
    - postgres_client.py: asyncpg connection pool wrapper
    - nats_client.py: NATS event bus for event-driven architecture

USAGE:
    from core.config import get_settings
    from core.postgres_client import PostgresClientWrapper

    settings = get_settings()
    db = PostgresClientWrapper("group_buy_service", settings.infrastructure)
"""

__version__ = "2.1.0"
