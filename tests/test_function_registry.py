from pathlib import Path

import pytest

from orchestrator.errors import (
    CatalogLoadError,
    FunctionNotFoundError,
    FunctionParameterError,
    PermissionDeniedError,
)
from orchestrator.function_registry import (
    FUNCTIONS_PATH,
    AIFunction,
    FunctionRegistry,
    Principal,
    build_registry,
    load_catalog,
)

CATALOG_NAMES = [
    "getVATDeadline",
    "searchTransactions",
    "getMissingReceipts",
    "getAccountSummary",
    "requestDocument",
]


def _principal(*permissions: str) -> Principal:
    return Principal(user_id="u1", tenant_id="t1", permissions=frozenset(permissions))


def test_default_catalog_loads_in_order():
    registry = build_registry()

    assert [f.name for f in registry.all_functions()] == CATALOG_NAMES
    assert len(registry) == 5
    assert "searchTransactions" in registry
    assert registry.lookup("searchTransactions").required_permission == "view:transactions"
    assert registry.lookup("nope") is None


def test_catalog_definitions_are_valid_object_schemas():
    registry = build_registry()

    for definition in registry.definitions():
        assert set(definition) == {"name", "description", "parameters"}
        assert definition["parameters"]["type"] == "object"


def test_functions_for_permissions_filters_and_keeps_order():
    registry = build_registry()

    allowed = registry.functions_for_permissions({"view:transactions", "view:documents"})

    assert [f.name for f in allowed] == ["searchTransactions", "getMissingReceipts", "requestDocument"]
    assert registry.functions_for_permissions(set()) == []


def test_function_without_permission_is_open_to_everyone():
    registry = FunctionRegistry([AIFunction(name="ping", description="health")])

    assert [f.name for f in registry.functions_for_permissions(set())] == ["ping"]


@pytest.mark.asyncio
async def test_execute_default_handler_returns_mock_result():
    registry = build_registry()

    result = await registry.execute("getVATDeadline", {}, _principal("view:vat_reports"))

    assert result["success"] is True
    assert result["data"] == "Mock result for getVATDeadline"


@pytest.mark.asyncio
async def test_execute_checks_permission_even_when_caller_did_not_filter():
    registry = build_registry()

    with pytest.raises(PermissionDeniedError) as exc_info:
        await registry.execute("searchTransactions", {"query": "rent"}, _principal())

    assert exc_info.value.permission == "view:transactions"
    assert str(exc_info.value) == "Missing required permission: view:transactions"


@pytest.mark.asyncio
async def test_execute_unknown_function():
    with pytest.raises(FunctionNotFoundError) as exc_info:
        await build_registry().execute("dropTables", {}, _principal())

    assert exc_info.value.function_name == "dropTables"


@pytest.mark.asyncio
async def test_execute_validates_parameters():
    registry = build_registry()

    with pytest.raises(FunctionParameterError) as exc_info:
        await registry.execute("requestDocument", {}, _principal("view:documents"))

    assert exc_info.value.details[0]["message"] == "'documentType' is a required property"


@pytest.mark.asyncio
async def test_execute_bound_sync_and_async_handlers():
    seen = {}

    def search(params, principal):
        seen["sync"] = (params, principal.tenant_id)
        return [{"amount": 12.5}]

    async def summary(params, principal):
        return {"balance": 100}

    registry = build_registry(handlers={"searchTransactions": search, "getAccountSummary": summary})
    principal = _principal("view:transactions", "view:accounts")

    assert await registry.execute("searchTransactions", {"query": "rent"}, principal) == [{"amount": 12.5}]
    assert seen["sync"] == ({"query": "rent"}, "t1")
    assert await registry.execute("getAccountSummary", None, principal) == {"balance": 100}


def test_duplicate_names_are_rejected():
    with pytest.raises(CatalogLoadError, match="Duplicate"):
        FunctionRegistry([AIFunction(name="a", description="x"), AIFunction(name="a", description="y")])


def test_non_object_parameters_are_rejected():
    with pytest.raises(CatalogLoadError, match="root type"):
        FunctionRegistry([AIFunction(name="a", description="x", parameters={"type": "string"})])


def test_invalid_draft7_schema_is_rejected():
    with pytest.raises(CatalogLoadError, match="Draft7"):
        FunctionRegistry(
            [AIFunction(name="a", description="x", parameters={"type": "object", "properties": {"q": {"type": 5}}})]
        )


def test_handler_for_unknown_function_is_rejected():
    with pytest.raises(CatalogLoadError, match="unknown functions"):
        load_catalog(FUNCTIONS_PATH, handlers={"notInCatalog": lambda p, pr: None})


def test_missing_catalog_file(tmp_path: Path):
    with pytest.raises(CatalogLoadError, match="not found"):
        load_catalog(tmp_path / "missing.yaml")


def test_malformed_catalog_file(tmp_path: Path):
    path = tmp_path / "functions.yaml"
    path.write_text("functions:\n  - name: onlyName\n", encoding="utf-8")

    with pytest.raises(CatalogLoadError, match="description"):
        load_catalog(path)

    path.write_text("- not a mapping\n", encoding="utf-8")
    with pytest.raises(CatalogLoadError, match="'functions' list"):
        load_catalog(path)
