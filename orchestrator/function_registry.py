from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

import yaml
from jsonschema import Draft7Validator, SchemaError

from .errors import CatalogLoadError, FunctionNotFoundError, FunctionParameterError, PermissionDeniedError

logger = logging.getLogger("orchestrator")

# The default catalog ships as package data next to this module.
FUNCTIONS_PATH = Path(__file__).parent / "functions.yaml"


@dataclass(frozen=True)
class Principal:
    """Who is invoking a function: identity plus flattened permission names."""

    user_id: str
    tenant_id: str
    permissions: FrozenSet[str] = frozenset()


FunctionHandler = Callable[[Dict[str, Any], Principal], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class AIFunction:
    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    required_permission: Optional[str] = None
    handler: Optional[FunctionHandler] = field(default=None, compare=False, repr=False)

    def definition(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters),
        }

    def is_allowed(self, granted: Iterable[str]) -> bool:
        return not self.required_permission or self.required_permission in granted


def _placeholder_handler(name: str) -> FunctionHandler:
    def handler(parameters: Dict[str, Any], principal: Principal) -> Dict[str, Any]:
        return {
            "success": True,
            "data": f"Mock result for {name}",
            "parameters": parameters,
        }

    return handler


class FunctionRegistry:
    """
    Read-only catalog of invocable business functions.

    Built once at startup and shared by reference. The catalog never changes
    after construction, so concurrent lookups need no locking.
    """

    def __init__(self, functions: Iterable[AIFunction]):
        catalog: Dict[str, AIFunction] = {}
        for func in functions:
            if func.name in catalog:
                raise CatalogLoadError(f"Duplicate function name: {func.name}")
            _check_parameters_schema(func.name, func.parameters)
            catalog[func.name] = func
        self._functions: Mapping[str, AIFunction] = MappingProxyType(catalog)
        self._validators: Mapping[str, Draft7Validator] = MappingProxyType(
            {name: Draft7Validator(dict(func.parameters)) for name, func in catalog.items()}
        )

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def lookup(self, name: str) -> Optional[AIFunction]:
        return self._functions.get(name)

    def all_functions(self) -> Tuple[AIFunction, ...]:
        # Dict preserves registration order.
        return tuple(self._functions.values())

    def functions_for_permissions(self, granted: Iterable[str]) -> List[AIFunction]:
        granted_set = frozenset(granted)
        return [func for func in self._functions.values() if func.is_allowed(granted_set)]

    def definitions(self, functions: Optional[Iterable[AIFunction]] = None) -> List[Dict[str, Any]]:
        source = self.all_functions() if functions is None else functions
        return [func.definition() for func in source]

    async def execute(self, name: str, parameters: Optional[Dict[str, Any]], principal: Principal) -> Any:
        """
        Run one function for `principal`.

        The permission check happens here regardless of what the caller already
        filtered, so a function outside the principal's grant never runs.
        """
        func = self._functions.get(name)
        if func is None:
            raise FunctionNotFoundError(name)

        if func.required_permission and func.required_permission not in principal.permissions:
            raise PermissionDeniedError(name, func.required_permission)

        params = dict(parameters or {})
        errors = [
            {"path": list(err.path), "message": err.message}
            for err in self._validators[name].iter_errors(params)
        ]
        if errors:
            raise FunctionParameterError(name, details=errors)

        handler = func.handler or _placeholder_handler(name)
        result = handler(params, principal)
        if inspect.isawaitable(result):
            result = await result
        return result


def _check_parameters_schema(name: str, schema: Any) -> None:
    if not isinstance(schema, Mapping):
        raise CatalogLoadError(f"Function {name}: parameters must be a JSON object schema")
    if schema.get("type") != "object":
        raise CatalogLoadError(f"Function {name}: parameters root type must be 'object'")
    try:
        Draft7Validator.check_schema(dict(schema))
    except SchemaError as exc:
        raise CatalogLoadError(f"Function {name}: parameters is not a valid Draft7 JSON schema: {exc.message}") from exc


def _read_catalog_yaml(path: Path) -> List[Dict[str, Any]]:
    if not path.exists():
        raise CatalogLoadError(f"Function catalog not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict) or not isinstance(data.get("functions"), list):
        raise CatalogLoadError("Function catalog must be a mapping with a 'functions' list")
    return data["functions"]


def load_catalog(
    path: Path = FUNCTIONS_PATH,
    handlers: Optional[Mapping[str, FunctionHandler]] = None,
) -> List[AIFunction]:
    """Load catalog entries from YAML and bind any handlers supplied by name."""
    handlers = handlers or {}
    functions: List[AIFunction] = []
    for raw in _read_catalog_yaml(path):
        if not isinstance(raw, dict):
            raise CatalogLoadError("Each catalog entry must be a mapping")
        try:
            name = str(raw["name"])
            description = str(raw["description"])
        except KeyError as exc:
            raise CatalogLoadError(f"Catalog entry missing required field: {exc.args[0]}") from exc
        required_permission = raw.get("required_permission")
        functions.append(
            AIFunction(
                name=name,
                description=description,
                parameters=raw.get("parameters") or {"type": "object", "properties": {}},
                required_permission=str(required_permission) if required_permission else None,
                handler=handlers.get(name),
            )
        )

    unknown = set(handlers) - {func.name for func in functions}
    if unknown:
        raise CatalogLoadError(f"Handlers bound to unknown functions: {sorted(unknown)}")
    return functions


def build_registry(
    path: Path = FUNCTIONS_PATH,
    handlers: Optional[Mapping[str, FunctionHandler]] = None,
) -> FunctionRegistry:
    registry = FunctionRegistry(load_catalog(path, handlers))
    logger.info("function registry loaded functions=%d path=%s", len(registry), path)
    return registry
