import pytest

from orchestrator.function_registry import build_registry
from orchestrator.models import INTENT_SUB_TYPES, Decision, FunctionCall, Intent, PermissionSet
from orchestrator.permissions import (
    REQUIRED_PERMISSIONS,
    PermissionResolver,
    StaticPermissionAuthority,
    permission_set_from_names,
)


def _resolver(*granted: str) -> PermissionResolver:
    return PermissionResolver(StaticPermissionAuthority(granted), build_registry())


@pytest.mark.parametrize(
    "sub_type,expected",
    [
        ("vat_query", {"view:vat_reports"}),
        ("transaction_query", {"view:transactions"}),
        ("receipt_status", {"view:receipts"}),
        ("generate_report", {"generate:reports"}),
        ("deadline_query", set()),
        (None, set()),
    ],
)
def test_required_permissions_by_sub_type(sub_type, expected):
    intent = Intent(type="question", sub_type=sub_type)

    assert _resolver().required_permissions(intent) == frozenset(expected)


def test_permission_set_from_names_maps_flags_and_extras():
    permissions = permission_set_from_names(["view:transactions", "view:accounts", "view:transactions"])

    assert permissions.can_view_transactions is True
    assert permissions.can_view_vat_reports is False
    assert permissions.additional_permissions == ["view:accounts"]


def test_flatten_round_trips_names():
    names = {"view:transactions", "upload:documents", "modify:data", "view:documents"}

    assert PermissionResolver.flatten(permission_set_from_names(names)) == frozenset(names)
    assert PermissionResolver.flatten(PermissionSet()) == frozenset()


@pytest.mark.asyncio
async def test_static_authority_returns_independent_copies():
    resolver = _resolver("view:accounts")

    first = await resolver.granted_permissions("u1", "t1", ["view:accounts"])
    first.additional_permissions.append("modify:data")
    second = await resolver.granted_permissions("u1", "t1", [])

    assert second.additional_permissions == ["view:accounts"]


def test_allowed_functions_follow_catalog_permissions():
    resolver = _resolver()

    allowed = resolver.allowed_functions(frozenset({"view:vat_reports", "view:accounts"}))

    assert [f.name for f in allowed] == ["getVATDeadline", "getAccountSummary"]


def test_denied_names_only_cover_registered_functions():
    decision = Decision(
        action="execute_function",
        functions=[
            FunctionCall(name="getVATDeadline"),
            FunctionCall(name="searchTransactions"),
            FunctionCall(name="notRegistered"),
        ],
    )

    denied = _resolver().denied_function_names(decision, frozenset({"view:vat_reports"}))

    assert denied == ["searchTransactions"]


def test_no_functions_means_nothing_denied():
    assert _resolver().denied_function_names(Decision(action="respond"), frozenset()) == []


def test_required_permissions_only_name_known_sub_types():
    assert set(REQUIRED_PERMISSIONS) <= set(INTENT_SUB_TYPES)
