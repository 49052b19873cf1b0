"""
Unit tests for the Business Rules HTTP surface.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from service_business_rules.app.main import BusinessRulesService, create_app
from shared.test_helpers import ORG_ID, OTHER_TENANT_ID, TENANT_ID, USER_ID, TestDataFactory, TestEnvironment


class TestBusinessRulesService:
    """Test cases for BusinessRulesService routes."""

    @pytest.fixture
    def app(self):
        """Create FastAPI app instance."""
        return create_app(TestEnvironment.get_config())

    @pytest.fixture
    def client(self, app):
        """Create test client."""
        return TestClient(app)

    @pytest.fixture
    def headers(self):
        return TestEnvironment.scope_headers()

    @pytest.fixture
    def create_rule(self, client, headers):
        def _create(**overrides):
            response = client.post(
                "/business-rules/rules",
                json=TestDataFactory.create_rule_payload(**overrides),
                headers=headers
            )
            assert response.status_code == 201, response.text
            return response.json()["id"]

        return _create

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["service"] == "business_rules"

    def test_health_endpoint(self, client):
        """Test health endpoint without persistence."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {}

    def test_metrics_endpoint(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    @pytest.mark.parametrize("headers,message", [
        ({}, "Missing X-Tenant-Id header"),
        ({"X-Tenant-Id": "not-a-uuid", "X-Organization-Id": str(uuid.uuid4())}, "Invalid X-Tenant-Id header"),
        ({"X-Tenant-Id": str(uuid.uuid4())}, "Missing X-Organization-Id header"),
    ])
    def test_scope_headers_required(self, client, headers, message):
        """Test that rule routes reject calls without a valid scope."""
        response = client.get("/business-rules/rules", headers=headers)

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"
        assert response.json()["message"] == message

    def test_create_and_get_rule(self, client, headers, create_rule):
        """Test creating a rule and reading it back."""
        rule_uuid = create_rule()

        response = client.get(f"/business-rules/rules/{rule_uuid}", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["rule_id"] == "ORDER-MIN-TOTAL"
        assert data["rule_type"] == "GUARD"
        assert data["created_by"] == "user-1"
        assert data["tenant_id"] == headers["X-Tenant-Id"]

    def test_create_rule_invalid_condition(self, client, headers):
        """Test that invalid conditions are rejected with a 400."""
        payload = TestDataFactory.create_rule_payload(
            condition_expression={"operator": "AND", "rules": [{"field": "total", "operator": "LIKE", "value": 1}]}
        )

        response = client.post("/business-rules/rules", json=payload, headers=headers)

        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["message"] == (
            "Validation failed: condition_expression: Invalid condition expression: "
            "rules[0]: Invalid comparison operator: LIKE"
        )

    def test_create_rule_too_deep(self, client, headers):
        payload = TestDataFactory.create_rule_payload(condition_expression=TestDataFactory.create_nested_condition(11))

        response = client.post("/business-rules/rules", json=payload, headers=headers)

        assert response.status_code == 400
        assert response.json()["message"] == (
            "Validation failed: condition_expression: Condition expression exceeds safety limits "
            "(max depth: 10, max rules per group: 50, max field path length: 200)"
        )

    def test_create_rule_structural_depth(self, client, headers):
        """Test conditions nested past five levels are rejected on create."""
        at_limit = TestDataFactory.create_rule_payload(condition_expression=TestDataFactory.create_nested_condition(5))
        too_deep = TestDataFactory.create_rule_payload(
            rule_id="TOO-DEEP", condition_expression=TestDataFactory.create_nested_condition(6)
        )

        accepted = client.post("/business-rules/rules", json=at_limit, headers=headers)
        rejected = client.post("/business-rules/rules", json=too_deep, headers=headers)

        assert accepted.status_code == 201
        assert rejected.status_code == 400
        assert rejected.json()["message"].endswith("Maximum nesting depth of 5 exceeded")

    def test_create_rule_missing_fields(self, client, headers):
        response = client.post("/business-rules/rules", json={"rule_id": "X"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["message"].startswith("Validation failed: ")

    def test_create_rule_body_must_be_object(self, client, headers):
        response = client.post("/business-rules/rules", json=["not", "an", "object"], headers=headers)

        assert response.status_code == 400
        assert response.json()["message"].startswith("Validation failed: ")

    def test_duplicate_rule_id(self, client, headers, create_rule):
        """Test that rule_id is unique within a scope."""
        create_rule()

        response = client.post("/business-rules/rules", json=TestDataFactory.create_rule_payload(), headers=headers)
        other_scope = client.post(
            "/business-rules/rules",
            json=TestDataFactory.create_rule_payload(),
            headers=TestEnvironment.scope_headers(tenant_id=OTHER_TENANT_ID)
        )

        assert response.status_code == 400
        assert "already exists" in response.json()["message"]
        assert other_scope.status_code == 201

    def test_rules_are_scoped(self, client, create_rule):
        rule_uuid = create_rule()

        response = client.get(
            f"/business-rules/rules/{rule_uuid}",
            headers=TestEnvironment.scope_headers(tenant_id=OTHER_TENANT_ID)
        )

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_update_rule(self, client, headers, create_rule):
        """Test partial updates keep untouched fields."""
        rule_uuid = create_rule(description="original")

        response = client.put(
            f"/business-rules/rules/{rule_uuid}",
            json={"priority": 5, "description": None},
            headers=headers
        )
        rule = client.get(f"/business-rules/rules/{rule_uuid}", headers=headers).json()

        assert response.json() == {"ok": True}
        assert rule["priority"] == 5
        assert rule["description"] is None
        assert rule["rule_name"] == "Order minimum total"

    def test_update_rule_rejects_inverted_window(self, client, headers, create_rule):
        rule_uuid = create_rule(effective_to="2030-01-01T00:00:00Z")

        response = client.put(
            f"/business-rules/rules/{rule_uuid}",
            json={"effective_from": "2031-01-01T00:00:00Z"},
            headers=headers
        )

        assert response.status_code == 400
        assert response.json()["message"] == "Validation failed: effective_from must not be after effective_to"

    def test_update_missing_rule(self, client, headers):
        response = client.put(f"/business-rules/rules/{uuid.uuid4()}", json={"priority": 1}, headers=headers)

        assert response.status_code == 404

    def test_delete_rule(self, client, headers, create_rule):
        """Test soft delete hides the rule."""
        rule_uuid = create_rule()

        response = client.delete(f"/business-rules/rules/{rule_uuid}", headers=headers)

        assert response.json() == {"ok": True}
        assert client.get(f"/business-rules/rules/{rule_uuid}", headers=headers).status_code == 404
        assert client.delete(f"/business-rules/rules/{rule_uuid}", headers=headers).status_code == 404

    def test_list_rules_filters_and_pages(self, client, headers, create_rule):
        """Test listing with filters, sorting and paging."""
        create_rule(rule_id="A", rule_name="Alpha check", priority=10)
        create_rule(rule_id="B", rule_name="Beta check", priority=30, rule_type="VALIDATION")
        create_rule(rule_id="C", rule_name="Gamma", priority=20, enabled=False)

        by_priority = client.get("/business-rules/rules", headers=headers).json()
        search = client.get("/business-rules/rules?search=check&sort_field=rule_id&sort_dir=asc", headers=headers).json()
        enabled = client.get("/business-rules/rules?enabled=false", headers=headers).json()
        paged = client.get("/business-rules/rules?page=2&page_size=2", headers=headers).json()

        assert [r["rule_id"] for r in by_priority["items"]] == ["B", "C", "A"]
        assert [r["rule_id"] for r in search["items"]] == ["A", "B"]
        assert [r["rule_id"] for r in enabled["items"]] == ["C"]
        assert paged["total"] == 3
        assert paged["total_pages"] == 2
        assert [r["rule_id"] for r in paged["items"]] == ["A"]

    def test_list_rules_bad_query(self, client, headers):
        response = client.get("/business-rules/rules?page_size=500", headers=headers)

        assert response.status_code == 400
        assert response.json()["message"].startswith("Validation failed: page_size")

    def test_validate_endpoint(self, client, headers):
        """Test dry validation of condition and actions."""
        valid = client.post("/business-rules/validate", json=TestDataFactory.create_rule_payload(), headers=headers)
        invalid = client.post(
            "/business-rules/validate",
            json={"success_actions": [{"type": "SET_FIELD", "config": {"field": "x"}}]},
            headers=headers
        )

        assert valid.json() == {"valid": True, "error": None, "errors": []}
        assert invalid.status_code == 200
        assert invalid.json()["valid"] is False
        assert invalid.json()["errors"] == [
            "Success actions: actions[0]: SET_FIELD action requires 'value' in config"
        ]

    def test_execute_guard(self, client, headers, create_rule):
        """Test a failing guard blocks the transition."""
        create_rule()
        body = {"entity_type": "order", "event_type": "submit", "entity_id": "order-1"}

        passed = client.post("/business-rules/execute", json={**body, "data": {"total": 150, "status": "draft"}},
                             headers=headers).json()
        blocked = client.post("/business-rules/execute", json={**body, "data": {"total": 20, "status": "draft"}},
                              headers=headers).json()

        assert passed["allowed"] is True
        assert passed["executed_rules"][0]["result"] == "SUCCESS"
        assert blocked["allowed"] is False
        assert blocked["messages"] == [
            {"level": "error", "message": "Order total 20 is below the minimum", "rule_id": "ORDER-MIN-TOTAL"}
        ]

    def test_execute_records_business_event(self, headers):
        """Test a successful run is answered and counted as a business event."""
        service = BusinessRulesService(TestEnvironment.get_config())
        client = TestClient(service.app)

        response = client.post(
            "/business-rules/execute",
            json={"entity_type": "order", "event_type": "submit", "data": {}},
            headers=headers
        )

        assert response.status_code == 200
        assert service.metrics.registry.get_sample_value(
            "business_events_total", {"event_type": "rules_executed", "service": "business_rules"}
        ) == 1.0

    def test_context_ids_come_from_headers(self, client, headers, create_rule):
        """Test body-supplied ids cannot override the caller's scope."""
        create_rule(condition_expression={
            "operator": "AND",
            "rules": [
                {"field": "tenant.id", "operator": "=", "value": TENANT_ID},
                {"field": "organization.id", "operator": "=", "value": ORG_ID},
                {"field": "user.id", "operator": "=", "value": USER_ID},
                {"field": "tenant.plan", "operator": "=", "value": "pro"},
            ],
        })

        result = client.post("/business-rules/execute", json={
            "entity_type": "order",
            "event_type": "submit",
            "data": {},
            "user": {"id": "intruder"},
            "tenant": {"id": OTHER_TENANT_ID, "plan": "pro"},
            "organization": {"id": str(uuid.uuid4())},
        }, headers=headers).json()

        assert result["allowed"] is True
        assert result["executed_rules"][0]["result"] == "SUCCESS"

    def test_execute_requires_entity_type(self, client, headers):
        response = client.post("/business-rules/execute", json={"data": {}}, headers=headers)

        assert response.status_code == 400

    def test_execute_single_rule(self, client, headers, create_rule):
        rule_uuid = create_rule()
        body = {"entity_type": "order", "data": {"total": 500, "status": "draft"}}

        by_uuid = client.post(f"/business-rules/rules/{rule_uuid}/execute", json=body, headers=headers)
        by_rule_id = client.post("/business-rules/execute/ORDER-MIN-TOTAL", json=body, headers=headers)
        missing = client.post("/business-rules/execute/NOPE", json=body, headers=headers)

        assert by_uuid.json()["executed_rules"][0]["id"] == rule_uuid
        assert by_rule_id.json()["allowed"] is True
        assert missing.status_code == 404

    def test_execute_disabled_rule(self, client, headers, create_rule):
        rule_uuid = create_rule(enabled=False)

        response = client.post(f"/business-rules/rules/{rule_uuid}/execute", json={"entity_type": "order"},
                               headers=headers)

        assert response.status_code == 400
        assert response.json()["message"] == "Validation failed: Rule is disabled"

    def test_execution_logs(self, client, headers, create_rule):
        """Test execution history is recorded and dry runs are not."""
        rule_uuid = create_rule()
        body = {"entity_type": "order", "event_type": "submit", "entity_id": "order-7", "data": {"total": 1}}

        client.post("/business-rules/execute", json=body, headers=headers)
        client.post("/business-rules/execute", json={**body, "dry_run": True}, headers=headers)
        response = client.get("/business-rules/logs?entity_id=order-7", headers=headers)

        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["rule_id"] == rule_uuid
        assert data["items"][0]["execution_result"] == "FAILURE"
        assert data["items"][0]["executed_by"] == "user-1"

    def test_execution_logs_are_scoped(self, client, headers, create_rule):
        create_rule()
        client.post("/business-rules/execute", json={"entity_type": "order", "event_type": "submit"}, headers=headers)

        response = client.get("/business-rules/logs", headers=TestEnvironment.scope_headers(tenant_id=OTHER_TENANT_ID))

        assert response.json()["total"] == 0

    def test_rule_set_lifecycle(self, client, headers, create_rule):
        """Test creating a set, adding members and executing it."""
        first = create_rule(rule_id="FIRST", priority=1, rule_type="VALIDATION",
                            success_actions=[{"type": "SHOW_INFO", "config": {"message": "first"}}])
        second = create_rule(rule_id="SECOND", priority=999, rule_type="VALIDATION",
                             success_actions=[{"type": "SHOW_INFO", "config": {"message": "second"}}])

        created = client.post("/business-rules/sets", json={"set_id": "CHECKOUT", "set_name": "Checkout"},
                              headers=headers)
        set_uuid = created.json()["id"]
        client.post(f"/business-rules/sets/{set_uuid}/members", json={"rule_id": second, "sequence": 2},
                    headers=headers)
        member = client.post(f"/business-rules/sets/{set_uuid}/members", json={"rule_id": first, "sequence": 1},
                             headers=headers)

        result = client.post(
            f"/business-rules/sets/{set_uuid}/execute",
            json={"entity_type": "order", "data": {"total": 150, "status": "draft"}},
            headers=headers
        ).json()

        assert created.status_code == 201
        assert member.status_code == 201
        assert [m["message"] for m in result["messages"]] == ["first", "second"]

        client.put(f"/business-rules/sets/{set_uuid}/members/{member.json()['id']}", json={"enabled": False},
                   headers=headers)
        rule_set = client.get(f"/business-rules/sets/{set_uuid}", headers=headers).json()
        assert [m["enabled"] for m in rule_set["members"]] == [False, True]

        removed = client.delete(f"/business-rules/sets/{set_uuid}/members/{member.json()['id']}", headers=headers)
        assert removed.json() == {"ok": True}
        assert len(client.get(f"/business-rules/sets/{set_uuid}", headers=headers).json()["members"]) == 1

    def test_rule_set_member_must_exist(self, client, headers):
        set_uuid = client.post("/business-rules/sets", json={"set_id": "S", "set_name": "S"}, headers=headers).json()["id"]

        response = client.post(f"/business-rules/sets/{set_uuid}/members", json={"rule_id": str(uuid.uuid4())},
                               headers=headers)

        assert response.status_code == 404

    def test_rule_set_update_and_delete(self, client, headers):
        set_uuid = client.post("/business-rules/sets", json={"set_id": "S", "set_name": "S"}, headers=headers).json()["id"]

        client.put(f"/business-rules/sets/{set_uuid}", json={"set_name": "Renamed", "enabled": False}, headers=headers)
        listed = client.get("/business-rules/sets", headers=headers).json()
        executed = client.post(f"/business-rules/sets/{set_uuid}/execute", json={"entity_type": "order"},
                               headers=headers)
        deleted = client.delete(f"/business-rules/sets/{set_uuid}", headers=headers)

        assert listed["items"][0]["set_name"] == "Renamed"
        assert executed.status_code == 400
        assert deleted.json() == {"ok": True}
        assert client.get("/business-rules/sets", headers=headers).json()["total"] == 0

    @pytest.fixture
    def failing_service(self):
        """Service whose rule set writes are rejected by the database."""
        service = BusinessRulesService(TestEnvironment.get_config())
        service.persistence = MagicMock()
        service.persistence.save_rule = AsyncMock(return_value=True)
        service.persistence.save_rule_set = AsyncMock(return_value=False)
        return service

    def test_rule_set_create_rolled_back_on_save_failure(self, failing_service, headers):
        client = TestClient(failing_service.app)

        response = client.post("/business-rules/sets", json={"set_id": "S", "set_name": "S"}, headers=headers)

        assert response.status_code == 500
        assert response.json()["code"] == "SERVICE_ERROR"
        assert client.get("/business-rules/sets", headers=headers).json()["total"] == 0
        assert failing_service.rule_engine.rule_sets == {}

    def test_rule_set_changes_rolled_back_on_save_failure(self, failing_service, headers):
        """Test every rule set write leaves memory untouched when the save fails."""
        client = TestClient(failing_service.app)
        save_rule_set = failing_service.persistence.save_rule_set
        save_rule_set.return_value = True

        first = client.post("/business-rules/rules", json=TestDataFactory.create_rule_payload(),
                            headers=headers).json()["id"]
        second = client.post("/business-rules/rules", json=TestDataFactory.create_rule_payload(rule_id="OTHER"),
                             headers=headers).json()["id"]
        set_uuid = client.post("/business-rules/sets", json={"set_id": "S", "set_name": "Before"},
                               headers=headers).json()["id"]
        member_id = client.post(f"/business-rules/sets/{set_uuid}/members", json={"rule_id": first, "sequence": 1},
                                headers=headers).json()["id"]
        save_rule_set.return_value = False

        responses = [
            client.put(f"/business-rules/sets/{set_uuid}", json={"set_name": "After"}, headers=headers),
            client.post(f"/business-rules/sets/{set_uuid}/members", json={"rule_id": second}, headers=headers),
            client.put(f"/business-rules/sets/{set_uuid}/members/{member_id}", json={"sequence": 9, "enabled": False},
                       headers=headers),
            client.delete(f"/business-rules/sets/{set_uuid}/members/{member_id}", headers=headers),
            client.delete(f"/business-rules/sets/{set_uuid}", headers=headers),
        ]

        assert [r.status_code for r in responses] == [500] * 5
        rule_set = client.get(f"/business-rules/sets/{set_uuid}", headers=headers).json()
        assert rule_set["set_name"] == "Before"
        assert rule_set["deleted_at"] is None
        assert [(m["id"], m["sequence"], m["enabled"]) for m in rule_set["members"]] == [(member_id, 1, True)]

    def test_stats(self, client, headers, create_rule):
        """Test stats are scoped to the caller."""
        create_rule()

        mine = client.get("/business-rules/stats", headers=headers).json()
        theirs = client.get("/business-rules/stats", headers=TestEnvironment.scope_headers(tenant_id=OTHER_TENANT_ID)).json()

        assert mine["engine"]["total_rules"] == 1
        assert theirs["engine"]["total_rules"] == 0
        assert mine["persistence"] == {"enabled": False}

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_service_uses_configured_limits(self):
        service = BusinessRulesService(TestEnvironment.get_config(max_condition_depth=3))
        client = TestClient(service.app)
        payload = TestDataFactory.create_rule_payload(condition_expression=TestDataFactory.create_nested_condition(4))

        response = client.post("/business-rules/rules", json=payload, headers=TestEnvironment.scope_headers())

        assert service.limits.max_depth == 3
        assert response.status_code == 400
