"""
Unit tests for PostgreSQL persistence.
"""

import json
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from service_business_rules.app.persistence.postgres import PostgreSQLPersistence
from service_business_rules.app.rules.models import RuleSet, RuleSetMember
from shared.errors import ServiceError
from shared.test_helpers import ORG_ID, TENANT_ID


def make_pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.close = AsyncMock()
    return pool


class TestPostgreSQLPersistence:
    """Test cases for PostgreSQLPersistence."""

    @pytest.fixture
    def conn(self):
        return AsyncMock()

    @pytest.fixture
    def persistence(self, conn):
        persistence = PostgreSQLPersistence("postgres://localhost/test")
        persistence.pool = make_pool(conn)
        return persistence

    @pytest.mark.asyncio
    async def test_start_creates_tables(self, conn):
        persistence = PostgreSQLPersistence("postgres://localhost/test")
        pool = make_pool(conn)

        with patch("service_business_rules.app.persistence.postgres.asyncpg.create_pool",
                   new=AsyncMock(return_value=pool)):
            await persistence.start()

        assert persistence.pool is pool
        statements = " ".join(call.args[0] for call in conn.execute.await_args_list)
        assert "CREATE TABLE IF NOT EXISTS business_rules" in statements
        assert "CREATE TABLE IF NOT EXISTS business_rule_sets" in statements

    @pytest.mark.asyncio
    async def test_start_failure_raises_service_error(self):
        persistence = PostgreSQLPersistence("postgres://localhost/test")

        with patch("service_business_rules.app.persistence.postgres.asyncpg.create_pool",
                   new=AsyncMock(side_effect=OSError("connection refused"))):
            with pytest.raises(ServiceError):
                await persistence.start()

    @pytest.mark.asyncio
    async def test_stop_closes_pool(self, persistence):
        pool = persistence.pool

        await persistence.stop()

        pool.close.assert_awaited_once()
        assert persistence.pool is None

    @pytest.mark.asyncio
    async def test_save_rule(self, persistence, conn, make_rule):
        rule = make_rule(condition_expression={"field": "total", "operator": ">", "value": 1})

        assert await persistence.save_rule(rule) is True

        args = conn.execute.await_args.args
        assert args[1:5] == (rule.id, rule.rule_id, TENANT_ID, ORG_ID)
        document = json.loads(args[5])
        assert document["condition_expression"] == rule.condition_expression
        assert document["rule_type"] == "VALIDATION"

    @pytest.mark.asyncio
    async def test_save_rule_failure_returns_false(self, persistence, conn, make_rule):
        conn.execute.side_effect = Exception("db down")

        assert await persistence.save_rule(make_rule()) is False

    @pytest.mark.asyncio
    async def test_delete_rule(self, persistence, conn):
        conn.execute.return_value = "UPDATE 1"
        assert await persistence.delete_rule(str(uuid.uuid4())) is True

        conn.execute.return_value = "UPDATE 0"
        assert await persistence.delete_rule(str(uuid.uuid4())) is False

    @pytest.mark.asyncio
    async def test_load_all_rules(self, persistence, conn, make_rule):
        first = make_rule(rule_id="A", priority=5)
        second = make_rule(rule_id="B")
        conn.fetch.return_value = [
            {"document": json.dumps(first.to_dict())},
            {"document": second.to_dict()},
        ]

        rules = await persistence.load_all_rules()

        assert [r.id for r in rules] == [first.id, second.id]
        assert rules[0].priority == 5
        assert rules[0].created_at == first.created_at

    @pytest.mark.asyncio
    async def test_load_failure_returns_empty(self, persistence, conn):
        conn.fetch.side_effect = Exception("db down")

        assert await persistence.load_all_rules() == []
        assert await persistence.load_all_rule_sets() == []

    @pytest.mark.asyncio
    async def test_rule_set_round_trip_keeps_members(self, persistence, conn, make_rule):
        rule = make_rule()
        rule_set = RuleSet(id=str(uuid.uuid4()), set_id="SET-1", set_name="Checks",
                           tenant_id=TENANT_ID, organization_id=ORG_ID)
        rule_set.members.append(RuleSetMember(
            id=str(uuid.uuid4()), rule_set_id=rule_set.id, rule_id=rule.id,
            tenant_id=TENANT_ID, organization_id=ORG_ID, sequence=3
        ))

        assert await persistence.save_rule_set(rule_set) is True
        conn.fetch.return_value = [{"document": conn.execute.await_args.args[5]}]

        loaded = await persistence.load_all_rule_sets()

        assert loaded[0].set_id == "SET-1"
        assert loaded[0].members[0].rule_id == rule.id
        assert loaded[0].members[0].sequence == 3

    @pytest.mark.asyncio
    async def test_rule_stats(self, persistence, conn):
        conn.fetchrow.return_value = {"total_rules": 4, "deleted_rules": 1, "unique_tenants": 2}

        assert await persistence.get_rule_stats() == {"total_rules": 4, "deleted_rules": 1, "unique_tenants": 2}

    @pytest.mark.asyncio
    async def test_health_check(self, persistence, conn):
        conn.fetchval.return_value = 1
        assert await persistence.health_check() is True

        conn.fetchval.side_effect = Exception("db down")
        assert await persistence.health_check() is False

        persistence.pool = None
        assert await persistence.health_check() is False
