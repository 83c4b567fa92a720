"""
Unit Tests for PostgresClientWrapper transactions

Calls made inside transaction() must run on the transaction's connection;
calls outside it go to the pool. Driven by fake pool and connection objects.
"""

import pytest

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config.infra_config import InfraConfig
from core.postgres_client import PostgresClientWrapper


class FakeTransaction:
    def __init__(self, log):
        self.log = log

    async def __aenter__(self):
        self.log.append("begin")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.log.append("rollback" if exc_type else "commit")
        return False


class FakeExecutor:
    def __init__(self, name, log):
        self.name = name
        self.log = log

    async def fetchrow(self, sql, *args):
        self.log.append(f"fetchrow@{self.name}")
        return {"ok": 1}

    async def fetch(self, sql, *args):
        self.log.append(f"fetch@{self.name}")
        return []

    async def execute(self, sql, *args):
        self.log.append(f"execute@{self.name}")
        return "UPDATE 2"


class FakeConnection(FakeExecutor):
    def transaction(self):
        return FakeTransaction(self.log)


class FakeAcquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakePool(FakeExecutor):
    def __init__(self, log):
        super().__init__("pool", log)
        self.conn = FakeConnection("conn", log)

    def acquire(self):
        return FakeAcquire(self.conn)


@pytest.fixture
def log():
    return []


@pytest.fixture
def db(log):
    client = PostgresClientWrapper("group_buy_service", InfraConfig())
    client._pool = FakePool(log)
    return client


class TestTransactionBinding:

    @pytest.mark.asyncio
    async def test_calls_inside_block_use_the_transaction_connection(self, db, log):
        await db.query_row("SELECT 1")
        async with db.transaction():
            await db.query_row("SELECT 1")
            affected = await db.execute("UPDATE t SET x = 1")
        await db.query("SELECT 1")

        assert log == [
            "fetchrow@pool",
            "begin",
            "fetchrow@conn",
            "execute@conn",
            "commit",
            "fetch@pool",
        ]
        assert affected == 2

    @pytest.mark.asyncio
    async def test_error_rolls_back_and_unbinds(self, db, log):
        with pytest.raises(RuntimeError):
            async with db.transaction():
                await db.execute("UPDATE t SET x = 1")
                raise RuntimeError("intent insert failed")

        await db.query_row("SELECT 1")

        assert log == ["begin", "execute@conn", "rollback", "fetchrow@pool"]

    @pytest.mark.asyncio
    async def test_nested_block_is_a_savepoint_on_the_same_connection(self, db, log):
        async with db.transaction() as outer:
            async with db.transaction() as inner:
                await db.query_row("SELECT 1")

        assert inner is outer
        assert log == ["begin", "begin", "fetchrow@conn", "commit", "commit"]
