from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Iterable, List, Protocol, Tuple

from .function_registry import AIFunction, FunctionRegistry
from .models import Decision, Intent, PermissionSet

logger = logging.getLogger("orchestrator")

# Intent sub-type -> permissions the request needs. Unlisted sub-types need nothing extra.
REQUIRED_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "vat_query": frozenset({"view:vat_reports"}),
    "transaction_query": frozenset({"view:transactions"}),
    "receipt_status": frozenset({"view:receipts"}),
    "generate_report": frozenset({"generate:reports"}),
}

# PermissionSet flag -> permission name, in flattening order.
_FLAG_PERMISSIONS: Tuple[Tuple[str, str], ...] = (
    ("can_view_transactions", "view:transactions"),
    ("can_view_vat_reports", "view:vat_reports"),
    ("can_view_receipts", "view:receipts"),
    ("can_upload_documents", "upload:documents"),
    ("can_generate_reports", "generate:reports"),
    ("can_modify_data", "modify:data"),
)


class PermissionAuthority(Protocol):
    async def check_permissions(
        self, user_id: str, tenant_id: str, required: List[str]
    ) -> PermissionSet:  # pragma: no cover - interface only
        ...


def permission_set_from_names(names: Iterable[str]) -> PermissionSet:
    """Build a structured PermissionSet from flat permission names."""
    names = list(dict.fromkeys(names))
    by_name = {perm: flag for flag, perm in _FLAG_PERMISSIONS}
    flags = {by_name[n]: True for n in names if n in by_name}
    extra = [n for n in names if n not in by_name]
    return PermissionSet(**flags, additional_permissions=extra)


class StaticPermissionAuthority:
    """Grants the same configured permission names to every principal."""

    def __init__(self, granted: Iterable[str]):
        self._granted = permission_set_from_names(granted)

    async def check_permissions(self, user_id: str, tenant_id: str, required: List[str]) -> PermissionSet:
        return self._granted.model_copy(deep=True)


class PermissionResolver:
    def __init__(self, authority: PermissionAuthority, registry: FunctionRegistry):
        self._authority = authority
        self._registry = registry

    def required_permissions(self, intent: Intent) -> FrozenSet[str]:
        if not intent.sub_type:
            return frozenset()
        return REQUIRED_PERMISSIONS.get(intent.sub_type, frozenset())

    async def granted_permissions(self, user_id: str, tenant_id: str, required: Iterable[str]) -> PermissionSet:
        return await self._authority.check_permissions(user_id, tenant_id, sorted(required))

    @staticmethod
    def flatten(permissions: PermissionSet) -> FrozenSet[str]:
        names = {perm for flag, perm in _FLAG_PERMISSIONS if getattr(permissions, flag)}
        names.update(permissions.additional_permissions)
        return frozenset(names)

    def allowed_functions(self, granted: FrozenSet[str]) -> List[AIFunction]:
        return self._registry.functions_for_permissions(granted)

    def denied_function_names(self, decision: Decision, granted: FrozenSet[str]) -> List[str]:
        """Proposed functions whose catalog entry needs a permission outside `granted`."""
        denied: List[str] = []
        for name in decision.function_names():
            func = self._registry.lookup(name)
            if func is not None and not func.is_allowed(granted):
                denied.append(name)
        return denied
