"""Exception hierarchy for the Customer DNA engine.

Each error carries a human readable message plus a ``details`` dict so the
orchestration layer can log structured context without parsing strings.

Recovery granularity:
- MissingDataError: fatal for the whole run
- DegenerateCustomerError: handled inside the engine (population fallback)
- ComputationError: recovered per customer (customer skipped and counted)
- ScopeError: recovered per scope (sibling scopes keep running)
- PersistenceError: reported separately by the orchestration boundary
"""

from __future__ import annotations

from typing import Any, Optional


class CustomerDNAError(Exception):
    """Base exception for all Customer DNA errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class MissingDataError(CustomerDNAError):
    """Raised when a required input column (or the scope list) is absent."""

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(
            message or f"Required input field missing: {field}", {"field": field}
        )


class DegenerateCustomerError(CustomerDNAError):
    """Raised when a customer has no usable individual purchase cycle.

    This is a signal rather than a failure: callers answer it with a
    population-level default.
    """

    def __init__(self, customer_id: str, message: Optional[str] = None):
        self.customer_id = customer_id
        super().__init__(
            message
            or f"Customer {customer_id} has no defined purchase cycle and no fallback",
            {"customer_id": customer_id},
        )


class ComputationError(CustomerDNAError):
    """Raised when a per-customer numeric computation fails."""

    def __init__(self, customer_id: str, message: str):
        self.customer_id = customer_id
        super().__init__(message, {"customer_id": customer_id})


class ScopeError(CustomerDNAError):
    """Raised when an entire scope cannot be analysed."""

    def __init__(self, scope_key: str, message: str):
        self.scope_key = scope_key
        super().__init__(message, {"scope_key": scope_key})


class PersistenceError(CustomerDNAError):
    """Raised when writing profile rows to a sink fails after retries."""

    def __init__(self, scope_key: str, message: str):
        self.scope_key = scope_key
        super().__init__(message, {"scope_key": scope_key})
