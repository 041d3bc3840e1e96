"""
Core module - validation, expressions and the error taxonomy.

Everything here is pure (no I/O, no event loop) and is shared by the
executor, the services and the storage backends.
"""

from pytaxis.core.errors import (
    CancellationError,
    CompensationError,
    DependencyUnsatisfiableError,
    ExpressionError,
    InvalidStateError,
    NotFoundError,
    RetryExhaustedError,
    StepInvocationError,
    ValidationError,
    WorkflowError,
)
from pytaxis.core.expressions import MISSING, ExpressionEvaluator, SimpleEvaluator, lookup_path
from pytaxis.core.pagination import DEFAULT_PAGE_SIZE, decode_page_token, fetch_page
from pytaxis.core.placeholders import PLACEHOLDER, placeholder_names, resolve_input, substitute
from pytaxis.core.validation import find_cycle, validate_definition

__all__ = [
    # Errors
    "WorkflowError",
    "ValidationError",
    "StepInvocationError",
    "RetryExhaustedError",
    "CompensationError",
    "CancellationError",
    "DependencyUnsatisfiableError",
    "ExpressionError",
    "NotFoundError",
    "InvalidStateError",
    # Validation
    "validate_definition",
    "find_cycle",
    # Expressions and placeholders
    "ExpressionEvaluator",
    "SimpleEvaluator",
    "MISSING",
    "lookup_path",
    "PLACEHOLDER",
    "substitute",
    "resolve_input",
    "placeholder_names",
    # Pagination
    "DEFAULT_PAGE_SIZE",
    "decode_page_token",
    "fetch_page",
]
