"""
Typed Exception Hierarchy for the expense approval kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the HTTP layer, bulk processing, the escalation job) must react to
errors by TYPE, never by parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        controller.handle_action(expense_id, approver_id, decision)
    except NotAuthorizedOrAlreadyActedError as e:
        return {"code": e.code, "expense_id": e.expense_id}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ExpenseWorkflowError (base)
    |
    +-- NotFoundError
    |   +-- ExpenseNotFoundError
    |   +-- RuleNotFoundError
    |   +-- CompanyNotFoundError
    |   +-- UserNotFoundError
    |
    +-- AuthorizationError
    |   +-- NotAuthorizedOrAlreadyActedError
    |   +-- RoleNotPermittedError
    |   +-- NotExpenseOwnerError
    |
    +-- ValidationError
    |   +-- InvalidActionError
    |   +-- InvalidCommentError
    |   +-- InvalidRuleError
    |   +-- InvalidExpenseError
    |   +-- InvalidExpenseStateError
    |   +-- NoApproverAvailableError
    |   +-- BulkRequestError
    |
    +-- DependencyFailureError
    |   +-- CurrencyConversionError
    |
    +-- ConcurrencyError
    |   +-- OptimisticLockError
    |   +-- TransitionRetryExhaustedError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- InternalError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                             | When Raised
----------------|----------------------------------|------------------------------------
Not found       | EXPENSE_NOT_FOUND                | Expense ID doesn't exist
                | RULE_NOT_FOUND                   | Approval rule ID doesn't exist
                | COMPANY_NOT_FOUND                | Company ID doesn't exist
                | USER_NOT_FOUND                   | User unknown to the directory
----------------|----------------------------------|------------------------------------
Authorization   | NOT_AUTHORIZED_OR_ALREADY_ACTED  | Caller holds no live pending entry
                | ROLE_NOT_PERMITTED               | Caller role may not use endpoint
                | NOT_EXPENSE_OWNER                | Caller does not own the expense
----------------|----------------------------------|------------------------------------
Validation      | INVALID_ACTION                   | Action not approve/reject
                | INVALID_COMMENT                  | Comment too long / wrong type
                | INVALID_RULE                     | Rule violates its invariants
                | INVALID_EXPENSE                  | Expense fields malformed
                | INVALID_EXPENSE_STATE            | Operation illegal in this status
                | NO_APPROVER_AVAILABLE            | Unrouted expense has no owner
                | INVALID_BULK_REQUEST             | Empty / oversized bulk request
----------------|----------------------------------|------------------------------------
Dependency      | CURRENCY_CONVERSION_FAILED       | Normalizer unavailable / no rate
----------------|----------------------------------|------------------------------------
Concurrency     | OPTIMISTIC_LOCK_CONFLICT         | Expense version moved underneath
                | TRANSITION_RETRY_EXHAUSTED       | Conflicts persisted past the limit
----------------|----------------------------------|------------------------------------
Immutability    | IMMUTABILITY_VIOLATION           | Fixed field modified
----------------|----------------------------------|------------------------------------
Internal        | INTERNAL_ERROR                   | Unexpected engine failure

===============================================================================
DESIGN DECISIONS
===============================================================================

1. Inherit from Exception, not ValueError/KeyError: domain errors are
   catchable as a group without mixing in programming errors.

2. ``code`` is a class attribute: available without instantiation, so the
   HTTP layer can document and map codes statically.

3. Categories map onto HTTP families in one place (expense_api.app):
   NotFoundError -> 404, AuthorizationError -> 403, ValidationError -> 400,
   ConcurrencyError -> 409, DependencyFailureError -> 503.

===============================================================================
"""


class ExpenseWorkflowError(Exception):
    """
    Base exception for all expense approval errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "EXPENSE_WORKFLOW_ERROR"


# Not-found exceptions


class NotFoundError(ExpenseWorkflowError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class ExpenseNotFoundError(NotFoundError):
    """Expense with given ID was not found."""

    code: str = "EXPENSE_NOT_FOUND"

    def __init__(self, expense_id: str):
        self.expense_id = expense_id
        super().__init__(f"Expense not found: {expense_id}")


class RuleNotFoundError(NotFoundError):
    """Approval rule with given ID was not found."""

    code: str = "RULE_NOT_FOUND"

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Approval rule not found: {rule_id}")


class CompanyNotFoundError(NotFoundError):
    """Company with given ID was not found."""

    code: str = "COMPANY_NOT_FOUND"

    def __init__(self, company_id: str):
        self.company_id = company_id
        super().__init__(f"Company not found: {company_id}")


class UserNotFoundError(NotFoundError):
    """User is unknown to the user directory."""

    code: str = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


# Authorization exceptions


class AuthorizationError(ExpenseWorkflowError):
    """Base exception for authorization failures."""

    code: str = "AUTHORIZATION_ERROR"


class NotAuthorizedOrAlreadyActedError(AuthorizationError):
    """
    Caller holds no live pending entry on the expense.

    Raised both when the caller was never in the chain and when the caller
    (or a racing duplicate request) already acted.  The two are reported
    identically so a losing racer cannot distinguish them from outside.
    """

    code: str = "NOT_AUTHORIZED_OR_ALREADY_ACTED"

    def __init__(self, expense_id: str, approver_id: str, reason: str = ""):
        self.expense_id = expense_id
        self.approver_id = approver_id
        self.reason = reason
        message = (
            f"Approver {approver_id} is not authorized to act on expense "
            f"{expense_id} or has already acted"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class RoleNotPermittedError(AuthorizationError):
    """Caller's role may not use this operation."""

    code: str = "ROLE_NOT_PERMITTED"

    def __init__(self, user_id: str, role: str, allowed: tuple[str, ...]):
        self.user_id = user_id
        self.role = role
        self.allowed = allowed
        super().__init__(
            f"User {user_id} with role {role!r} is not permitted; "
            f"requires one of {', '.join(allowed)}"
        )


class NotExpenseOwnerError(AuthorizationError):
    """Caller does not own the expense it is trying to modify."""

    code: str = "NOT_EXPENSE_OWNER"

    def __init__(self, expense_id: str, user_id: str):
        self.expense_id = expense_id
        self.user_id = user_id
        super().__init__(f"User {user_id} does not own expense {expense_id}")


# Validation exceptions


class ValidationError(ExpenseWorkflowError):
    """Base exception for malformed input or illegal operations."""

    code: str = "VALIDATION_ERROR"


class InvalidActionError(ValidationError):
    """Approval action is not one of approve/reject."""

    code: str = "INVALID_ACTION"

    def __init__(self, action: object):
        self.action = action
        super().__init__(f"Action must be either approve or reject, got {action!r}")


class InvalidCommentError(ValidationError):
    """Approval comment is malformed or too long."""

    code: str = "INVALID_COMMENT"

    def __init__(self, reason: str, max_length: int | None = None):
        self.reason = reason
        self.max_length = max_length
        super().__init__(f"Invalid comment: {reason}")


class InvalidRuleError(ValidationError):
    """Approval rule definition violates its invariants."""

    code: str = "INVALID_RULE"

    def __init__(self, rule_name: str, reason: str):
        self.rule_name = rule_name
        self.reason = reason
        super().__init__(f"Invalid approval rule {rule_name!r}: {reason}")


class InvalidExpenseError(ValidationError):
    """Expense fields are malformed (amount, currency, category, ...)."""

    code: str = "INVALID_EXPENSE"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid expense {field}: {reason}")


class InvalidExpenseStateError(ValidationError):
    """Operation is not permitted for the expense's current status."""

    code: str = "INVALID_EXPENSE_STATE"

    def __init__(self, expense_id: str, status: str, operation: str):
        self.expense_id = expense_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} expense {expense_id} in status {status!r}"
        )


class NoApproverAvailableError(ValidationError):
    """
    An expense above the auto-approval limit matched no rule and the
    company has neither a default approver nor an active admin.
    """

    code: str = "NO_APPROVER_AVAILABLE"

    def __init__(self, company_id: str):
        self.company_id = company_id
        super().__init__(
            f"Company {company_id} has no default approver or active admin "
            "to own an unrouted expense"
        )


class BulkRequestError(ValidationError):
    """Bulk request is empty or exceeds the configured limit."""

    code: str = "INVALID_BULK_REQUEST"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid bulk request: {reason}")


# Dependency exceptions


class DependencyFailureError(ExpenseWorkflowError):
    """Base exception for failing external collaborators."""

    code: str = "DEPENDENCY_FAILURE"


class CurrencyConversionError(DependencyFailureError):
    """The currency normalizer could not produce a rate."""

    code: str = "CURRENCY_CONVERSION_FAILED"

    def __init__(self, from_currency: str, to_currency: str, reason: str):
        self.from_currency = from_currency
        self.to_currency = to_currency
        self.reason = reason
        super().__init__(
            f"Failed to convert {from_currency} to {to_currency}: {reason}"
        )


# Concurrency exceptions


class ConcurrencyError(ExpenseWorkflowError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class OptimisticLockError(ConcurrencyError):
    """Optimistic locking conflict detected."""

    code: str = "OPTIMISTIC_LOCK_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, expected_version: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"Optimistic lock conflict on {entity_type} {entity_id} "
            f"(expected version {expected_version}): entity was modified "
            "by another transaction"
        )


class TransitionRetryExhaustedError(ConcurrencyError):
    """Version conflicts persisted beyond the configured retry limit."""

    code: str = "TRANSITION_RETRY_EXHAUSTED"

    def __init__(self, expense_id: str, attempts: int):
        self.expense_id = expense_id
        self.attempts = attempts
        super().__init__(
            f"Expense {expense_id} kept changing underneath the transition "
            f"after {attempts} attempts"
        )


# Immutability exceptions


class ImmutabilityError(ExpenseWorkflowError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """Attempted to modify a field that is fixed once computed."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class InternalError(ExpenseWorkflowError):
    """Unexpected engine failure."""

    code: str = "INTERNAL_ERROR"
