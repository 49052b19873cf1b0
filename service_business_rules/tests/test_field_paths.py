"""
Unit tests for field path helpers.
"""

import pytest

from service_business_rules.app.rules.paths import (
    FieldPathError, get_value, is_valid_field_path, render_template, render_value,
    root_segment, set_value
)


class TestFieldPaths:
    """Test cases for path parsing, reading and writing."""

    @pytest.fixture
    def order(self):
        return {
            "total": 150,
            "customer": {"name": "Acme", "tier": "gold"},
            "lines": [{"sku": "A-1", "qty": 2}, {"sku": "B-2", "qty": 1}],
        }

    @pytest.mark.parametrize("path", ["total", "customer.name", "lines[0].sku", "_private", "a.b_c.d1", "m[0][1]"])
    def test_valid_paths(self, path):
        assert is_valid_field_path(path) is True

    @pytest.mark.parametrize("path", [
        "", "1total", "customer..name", "lines[x]", "customer.", "a b", "total\n", "order.total\n", None, 42
    ])
    def test_invalid_paths(self, path):
        assert is_valid_field_path(path) is False

    def test_trailing_newline_is_not_a_path(self, order):
        with pytest.raises(FieldPathError):
            get_value(order, "total\n")

        with pytest.raises(FieldPathError):
            set_value(order, "total\n", 1)

    def test_path_length_limit(self):
        assert is_valid_field_path("a" * 200) is True
        assert is_valid_field_path("a" * 201) is False

    def test_get_value(self, order):
        assert get_value(order, "total") == 150
        assert get_value(order, "customer.tier") == "gold"
        assert get_value(order, "lines[1].sku") == "B-2"

    def test_get_value_missing_returns_none(self, order):
        assert get_value(order, "customer.email") is None
        assert get_value(order, "lines[5].sku") is None
        assert get_value(order, "total.amount") is None
        assert get_value(None, "total") is None

    def test_set_value_creates_intermediate_objects(self, order):
        set_value(order, "shipping.address.city", "Oslo")

        assert order["shipping"] == {"address": {"city": "Oslo"}}

    def test_set_value_within_list(self, order):
        set_value(order, "lines[0].qty", 5)

        assert order["lines"][0]["qty"] == 5

    def test_set_value_out_of_range_raises(self, order):
        with pytest.raises(FieldPathError):
            set_value(order, "lines[7].qty", 1)

    def test_set_value_through_scalar_raises(self, order):
        with pytest.raises(FieldPathError):
            set_value(order, "total.amount", 1)

    def test_render_template(self, order):
        rendered = render_template(
            "Order for {{ customer.name }} totals {{total}}{{missing}}",
            lambda path: get_value(order, path)
        )

        assert rendered == "Order for Acme totals 150"

    def test_render_value_keeps_type_for_single_placeholder(self, order):
        rendered = render_value(
            {"amount": "{{total}}", "note": ["sku {{lines[0].sku}}"]},
            lambda path: get_value(order, path)
        )

        assert rendered == {"amount": 150, "note": ["sku A-1"]}

    def test_root_segment(self):
        assert root_segment("user.roles[0]") == "user"
        assert root_segment("lines[0].sku") == "lines"
        assert root_segment("total") == "total"
