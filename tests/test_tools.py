"""
Tests for the tool registry and the commerce tools.
"""

import json

import pytest
from pydantic import BaseModel

from chat_commerce.exceptions import ValidationError
from chat_commerce.orders import OrderTransactionManager
from chat_commerce.tools import ToolContext, ToolRegistry, ToolSpec, build_tool_registry

from conftest import stock_of

CONTEXT = ToolContext(sender_id="5511999990000")


@pytest.fixture
def registry(stocked_database):
    return build_tool_registry(stocked_database, OrderTransactionManager(stocked_database))


class EchoArgs(BaseModel):
    value: int


# =============================================================================
# Registry
# =============================================================================

class TestRegistry:
    """Registration, schemas and argument validation."""

    def test_tool_names(self, registry):
        assert registry.names == [
            "search_products",
            "get_product_details",
            "extract_products",
            "check_availability",
            "create_order",
        ]

    def test_schemas_are_self_contained(self, registry):
        schemas = registry.schemas()

        assert [s["function"]["name"] for s in schemas] == registry.names
        assert all(s["type"] == "function" for s in schemas)
        assert "$ref" not in json.dumps(schemas)
        assert "$defs" not in json.dumps(schemas)

    def test_nested_item_schema_is_inlined(self, registry):
        schema = next(s for s in registry.schemas() if s["function"]["name"] == "create_order")
        items = schema["function"]["parameters"]["properties"]["items"]

        assert items["type"] == "array"
        assert set(items["items"]["properties"]) == {"product_id", "quantity"}

    def test_duplicate_registration(self):
        tool = ToolSpec(name="echo", description="echo", args_model=EchoArgs, handler=lambda a, c: {})
        registry = ToolRegistry([tool])

        with pytest.raises(ValueError):
            registry.register(tool)

    def test_unknown_tool(self, registry):
        with pytest.raises(ValidationError) as excinfo:
            registry.execute("delete_everything", {}, CONTEXT)
        assert excinfo.value.code == "UNKNOWN_TOOL"

    def test_invalid_arguments_never_reach_handler(self):
        calls = []
        registry = ToolRegistry([
            ToolSpec(
                name="echo",
                description="echo",
                args_model=EchoArgs,
                handler=lambda args, context: calls.append(args) or {"value": args.value},
            ),
        ])

        with pytest.raises(ValidationError) as excinfo:
            registry.execute("echo", {"value": "not a number"}, CONTEXT)

        assert excinfo.value.code == "INVALID_ARGUMENTS"
        assert calls == []

    def test_malformed_json_arguments(self, registry):
        with pytest.raises(ValidationError) as excinfo:
            registry.execute("search_products", '{"query": "arroz"', CONTEXT)
        assert excinfo.value.code == "INVALID_ARGUMENTS"

    def test_non_object_arguments(self, registry):
        with pytest.raises(ValidationError):
            registry.execute("search_products", '["arroz"]', CONTEXT)

    def test_json_string_arguments(self, registry):
        result = registry.execute("search_products", '{"query": "arroz"}', CONTEXT)
        assert result.payload["results_count"] == 1

    def test_zero_quantity_is_invalid(self, registry, stocked_database):
        with pytest.raises(ValidationError):
            registry.execute("create_order", {"items": [{"product_id": "PROD-A", "quantity": 0}]}, CONTEXT)
        assert stock_of(stocked_database, "PROD-A") == 5


# =============================================================================
# Catalog tools
# =============================================================================

class TestCatalogTools:
    """search_products, get_product_details and extract_products."""

    def test_search_is_case_insensitive(self, registry):
        result = registry.execute("search_products", {"query": "ARROZ"}, CONTEXT)

        assert result.tool_name == "search_products"
        assert not result.is_error
        assert result.payload["query"] == "ARROZ"
        assert [p["id"] for p in result.payload["products"]] == ["ARZ-INT"]

    def test_search_matches_description(self, registry):
        result = registry.execute("search_products", {"query": "estoque limitado"}, CONTEXT)
        assert [p["id"] for p in result.payload["products"]] == ["PROD-A"]

    def test_search_without_results(self, registry):
        result = registry.execute("search_products", {"query": "chocolate"}, CONTEXT)
        assert result.payload["results_count"] == 0
        assert result.payload["products"] == []

    def test_product_details(self, registry):
        result = registry.execute("get_product_details", {"product_id": "FEI-PRE"}, CONTEXT)

        assert result.payload["product"]["name"] == "Feijão Preto"
        assert result.payload["product"]["price"] == "9.49"
        assert result.payload["product"]["stock"] == 20

    def test_product_details_unknown_id(self, registry):
        result = registry.execute("get_product_details", {"product_id": "NOPE"}, CONTEXT)

        assert result.is_error
        assert "NOPE" in result.payload["error"]

    def test_extract_products(self, registry):
        result = registry.execute("extract_products", {"text": "quero 2kg de arroz integral"}, CONTEXT)

        assert result.payload["matched_products"] == [{
            "id": "ARZ-INT",
            "name": "Arroz Integral",
            "price": "8.90",
            "quantity": 2,
            "subtotal": "17.80",
            "available": True,
            "stock": 10,
            "confidence": 1.0,
        }]

    def test_extract_flags_unavailable_quantity(self, registry):
        result = registry.execute("extract_products", {"text": "7 produto a"}, CONTEXT)

        matched = result.payload["matched_products"]
        assert [(m["id"], m["quantity"], m["available"]) for m in matched] == [("PROD-A", 7, False)]

    def test_extract_nothing(self, registry):
        result = registry.execute("extract_products", {"text": "boa tarde"}, CONTEXT)
        assert result.payload["matched_products"] == []


# =============================================================================
# Order tools
# =============================================================================

class TestOrderTools:
    """check_availability and create_order."""

    def test_check_availability(self, registry):
        result = registry.execute("check_availability", {"items": [
            {"product_id": "PROD-A", "quantity": 5},
            {"product_id": "ARZ-INT", "quantity": 11},
            {"product_id": "NOPE", "quantity": 1},
        ]}, CONTEXT)

        results = result.payload["results"]
        assert [(r["product_id"], r["found"], r["available"]) for r in results] == [
            ("PROD-A", True, True),
            ("ARZ-INT", True, False),
            ("NOPE", False, False),
        ]
        assert results[1]["in_stock"] == 10

    def test_check_availability_does_not_reserve(self, registry, stocked_database):
        registry.execute("check_availability", {"items": [{"product_id": "PROD-A", "quantity": 5}]}, CONTEXT)
        assert stock_of(stocked_database, "PROD-A") == 5

    def test_create_order_defaults_customer_to_sender(self, registry, stocked_database):
        result = registry.execute(
            "create_order",
            json.dumps({"items": [{"product_id": "PROD-A", "quantity": 3}]}),
            CONTEXT,
        )

        assert result.payload["success"] is True
        assert result.payload["customer_id"] == "5511999990000"
        assert result.payload["total"] == "30.00"
        assert result.payload["items"][0]["subtotal"] == "30.00"
        assert stock_of(stocked_database, "PROD-A") == 2

    def test_create_order_explicit_customer(self, registry):
        result = registry.execute("create_order", {
            "customer_id": "outro-cliente",
            "items": [{"product_id": "ARZ-INT", "quantity": 1}],
        }, CONTEXT)

        assert result.payload["customer_id"] == "outro-cliente"

    def test_create_order_unavailable(self, registry, stocked_database):
        result = registry.execute("create_order", {"items": [
            {"product_id": "ARZ-INT", "quantity": 1},
            {"product_id": "PROD-A", "quantity": 6},
        ]}, CONTEXT)

        assert result.payload["success"] is False
        assert "order_id" not in result.payload
        assert result.payload["unavailable_items"] == [{
            "product_id": "PROD-A",
            "name": "Produto A",
            "reason": "insufficient_stock",
            "requested": 6,
            "available": 5,
        }]
        assert stock_of(stocked_database, "ARZ-INT") == 10
