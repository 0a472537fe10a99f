"""
Error taxonomy for the orchestration pipeline.

Upstream failures (classification, decision, response, permission lookup,
persistence) abort a pipeline run. Function errors are contained in a single
ActionResult and never escape the pipeline.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(RuntimeError):
    """Base class for all orchestration failures."""


class ClassificationError(OrchestrationError):
    """Raised when the intent classifier fails or is unreachable."""


class DecisionError(OrchestrationError):
    """Raised when the decision-maker fails to propose a decision."""


class ResponseGenerationError(OrchestrationError):
    """Raised when the responder fails to compose reply text."""


class PermissionResolutionError(OrchestrationError):
    """Raised when the permission authority cannot be consulted."""


class PersistenceError(OrchestrationError):
    """Raised when context or conversation state cannot be persisted."""


class ContextVersionConflict(PersistenceError):
    """Raised when a context save does not match the stored version."""

    def __init__(self, context_id: str, expected_version: int, message: str | None = None):
        self.context_id = context_id
        self.expected_version = expected_version
        super().__init__(
            message or f"Context {context_id} was modified concurrently (expected version {expected_version})"
        )


class ContextNotFoundError(OrchestrationError, LookupError):
    """Raised when a context id does not exist."""


class CatalogLoadError(OrchestrationError):
    """Raised when the function catalog cannot be loaded or validated."""


class FunctionError(OrchestrationError):
    """Base class for per-action failures."""

    def __init__(self, function_name: str, message: str):
        self.function_name = function_name
        super().__init__(message)


class FunctionNotFoundError(FunctionError):
    def __init__(self, function_name: str):
        super().__init__(function_name, f"Function {function_name} not found")


class PermissionDeniedError(FunctionError):
    def __init__(self, function_name: str, permission: str):
        self.permission = permission
        super().__init__(function_name, f"Missing required permission: {permission}")


class FunctionParameterError(FunctionError):
    def __init__(self, function_name: str, details: Any = None):
        self.details = details
        super().__init__(function_name, f"Invalid parameters for function {function_name}")
