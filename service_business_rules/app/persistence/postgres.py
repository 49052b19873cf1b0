"""
PostgreSQL persistence layer for the Business Rules Service.

Rules and rule sets are stored as JSONB documents keyed by UUID, with the
scope columns broken out for filtering.
"""

import json
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import ServiceError
from shared.logging import get_logger

from ..rules.models import BusinessRule, RuleSet, utcnow


class PostgreSQLPersistence:
    """PostgreSQL persistence layer for rules and rule sets."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("business_rules.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30
            )

            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ServiceError("Failed to start PostgreSQL persistence", {"error": str(e)})

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL persistence stopped")

    async def _create_tables(self):
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS business_rules (
                    id UUID PRIMARY KEY,
                    rule_id VARCHAR(50) NOT NULL,
                    tenant_id UUID NOT NULL,
                    organization_id UUID NOT NULL,
                    document JSONB NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    deleted_at TIMESTAMP WITH TIME ZONE
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_business_rules_scope
                ON business_rules(tenant_id, organization_id);
            """)
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS business_rule_sets (
                    id UUID PRIMARY KEY,
                    set_id VARCHAR(50) NOT NULL,
                    tenant_id UUID NOT NULL,
                    organization_id UUID NOT NULL,
                    document JSONB NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    deleted_at TIMESTAMP WITH TIME ZONE
                );
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_business_rule_sets_scope
                ON business_rule_sets(tenant_id, organization_id);
            """)

    async def save_rule(self, rule: BusinessRule) -> bool:
        """Insert or replace a rule document."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO business_rules (
                        id, rule_id, tenant_id, organization_id, document, updated_at, deleted_at
                    ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
                    ON CONFLICT (id) DO UPDATE SET
                        rule_id = EXCLUDED.rule_id,
                        document = EXCLUDED.document,
                        updated_at = EXCLUDED.updated_at,
                        deleted_at = EXCLUDED.deleted_at
                """,
                    rule.id, rule.rule_id, rule.tenant_id, rule.organization_id,
                    json.dumps(rule.to_dict()), rule.updated_at, rule.deleted_at
                )

                self.logger.info("Rule saved", rule_id=rule.rule_id, id=rule.id)
                return True

        except Exception as e:
            self.logger.error("Error saving rule", rule_id=rule.rule_id, error=str(e))
            return False

    async def delete_rule(self, rule_uuid: str) -> bool:
        """Soft-delete a rule by stamping ``deleted_at``."""
        deleted_at = utcnow()
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    UPDATE business_rules
                    SET deleted_at = $2,
                        updated_at = $2,
                        document = jsonb_set(document, '{deleted_at}', to_jsonb($3::text))
                    WHERE id = $1 AND deleted_at IS NULL
                """, rule_uuid, deleted_at, deleted_at.isoformat())

                if result == "UPDATE 1":
                    self.logger.info("Rule deleted", id=rule_uuid)
                    return True
                self.logger.warning("Rule not found for deletion", id=rule_uuid)
                return False

        except Exception as e:
            self.logger.error("Error deleting rule", id=rule_uuid, error=str(e))
            return False

    async def load_all_rules(self) -> List[BusinessRule]:
        """Load every live rule."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT document FROM business_rules
                    WHERE deleted_at IS NULL
                    ORDER BY rule_id ASC
                """)
                return [BusinessRule.from_dict(self._document(row)) for row in rows]

        except Exception as e:
            self.logger.error("Error loading all rules", error=str(e))
            return []

    async def save_rule_set(self, rule_set: RuleSet) -> bool:
        """Insert or replace a rule set document, members included."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute("""
                    INSERT INTO business_rule_sets (
                        id, set_id, tenant_id, organization_id, document, updated_at, deleted_at
                    ) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7)
                    ON CONFLICT (id) DO UPDATE SET
                        set_id = EXCLUDED.set_id,
                        document = EXCLUDED.document,
                        updated_at = EXCLUDED.updated_at,
                        deleted_at = EXCLUDED.deleted_at
                """,
                    rule_set.id, rule_set.set_id, rule_set.tenant_id, rule_set.organization_id,
                    json.dumps(rule_set.to_dict()), rule_set.updated_at, rule_set.deleted_at
                )

                self.logger.info("Rule set saved", set_id=rule_set.set_id, id=rule_set.id)
                return True

        except Exception as e:
            self.logger.error("Error saving rule set", set_id=rule_set.set_id, error=str(e))
            return False

    async def load_all_rule_sets(self) -> List[RuleSet]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch("""
                    SELECT document FROM business_rule_sets
                    WHERE deleted_at IS NULL
                    ORDER BY set_id ASC
                """)
                return [RuleSet.from_dict(self._document(row)) for row in rows]

        except Exception as e:
            self.logger.error("Error loading rule sets", error=str(e))
            return []

    async def get_rule_stats(self) -> Dict[str, Any]:
        """Get stored rule statistics."""
        try:
            async with self.pool.acquire() as conn:
                stats = await conn.fetchrow("""
                    SELECT
                        COUNT(*) FILTER (WHERE deleted_at IS NULL) as total_rules,
                        COUNT(*) FILTER (WHERE deleted_at IS NOT NULL) as deleted_rules,
                        COUNT(DISTINCT tenant_id) as unique_tenants
                    FROM business_rules
                """)
                return dict(stats)

        except Exception as e:
            self.logger.error("Error getting rule stats", error=str(e))
            return {}

    @staticmethod
    def _document(row) -> Dict[str, Any]:
        document = row["document"]
        return json.loads(document) if isinstance(document, str) else dict(document)

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
