"""Shared status and kind constants for stock records and requests."""

# Serialized equipment unit lifecycle
UNIT_AVAILABLE = "Available"
UNIT_ISSUED = "Issued"
UNIT_ASSIGNED = "Assigned"
UNIT_MAINTENANCE = "Maintenance"
UNIT_DAMAGED = "Damaged"

UNIT_STATUS_CHOICES = (
    UNIT_AVAILABLE,
    UNIT_ISSUED,
    UNIT_ASSIGNED,
    UNIT_MAINTENANCE,
    UNIT_DAMAGED,
)

# Request lifecycle
REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_PARTIALLY_FULFILLED = "partially_fulfilled"
REQUEST_FULFILLED = "fulfilled"
REQUEST_COMPLETED = "completed"

REQUEST_STATUS_CHOICES = (
    REQUEST_PENDING,
    REQUEST_APPROVED,
    REQUEST_REJECTED,
    REQUEST_PARTIALLY_FULFILLED,
    REQUEST_FULFILLED,
    REQUEST_COMPLETED,
)

REQUEST_TRANSITIONS: dict[str, frozenset[str]] = {
    REQUEST_PENDING: frozenset({REQUEST_APPROVED, REQUEST_REJECTED}),
    REQUEST_APPROVED: frozenset({REQUEST_PARTIALLY_FULFILLED, REQUEST_FULFILLED}),
    REQUEST_PARTIALLY_FULFILLED: frozenset({REQUEST_FULFILLED}),
    REQUEST_FULFILLED: frozenset({REQUEST_COMPLETED}),
    REQUEST_REJECTED: frozenset(),
    REQUEST_COMPLETED: frozenset(),
}

# Request item variants
KIND_CHEMICAL = "chemical"
KIND_GLASSWARE = "glassware"
KIND_EQUIPMENT = "equipment"

ITEM_KINDS = (KIND_CHEMICAL, KIND_GLASSWARE, KIND_EQUIPMENT)

# Ledger entry types
ENTRY_INTAKE = "entry"
ENTRY_ALLOCATION = "allocation"
ENTRY_ROLLBACK = "rollback"
ENTRY_ISSUE = "issue"
ENTRY_ASSIGN = "assign"
ENTRY_RETURN = "return"
ENTRY_TRANSFER = "transfer"
ENTRY_REGISTER = "register"
ENTRY_EXPIRED_DELETE = "expired_delete"
ENTRY_EXPIRED_MERGE = "expired_merge"
ENTRY_EXPIRY_UPDATE = "expiry_update"

# Actor roles
ROLE_ADMIN = "admin"
ROLE_LAB_ASSISTANT = "lab_assistant"
ROLE_FACULTY = "faculty"
ROLES = (ROLE_ADMIN, ROLE_LAB_ASSISTANT, ROLE_FACULTY)

FACULTY_LOCATION = "faculty"


def next_request_statuses(status: str | None) -> frozenset[str]:
    """Return the statuses reachable from ``status`` in one step."""

    return REQUEST_TRANSITIONS.get((status or "").strip().lower(), frozenset())


__all__ = [
    "ENTRY_ALLOCATION",
    "ENTRY_ASSIGN",
    "ENTRY_EXPIRED_DELETE",
    "ENTRY_EXPIRED_MERGE",
    "ENTRY_EXPIRY_UPDATE",
    "ENTRY_INTAKE",
    "ENTRY_ISSUE",
    "ENTRY_REGISTER",
    "ENTRY_RETURN",
    "ENTRY_ROLLBACK",
    "ENTRY_TRANSFER",
    "FACULTY_LOCATION",
    "ITEM_KINDS",
    "KIND_CHEMICAL",
    "KIND_EQUIPMENT",
    "KIND_GLASSWARE",
    "REQUEST_APPROVED",
    "REQUEST_COMPLETED",
    "REQUEST_FULFILLED",
    "REQUEST_PARTIALLY_FULFILLED",
    "REQUEST_PENDING",
    "REQUEST_REJECTED",
    "REQUEST_STATUS_CHOICES",
    "REQUEST_TRANSITIONS",
    "ROLE_ADMIN",
    "ROLE_FACULTY",
    "ROLE_LAB_ASSISTANT",
    "ROLES",
    "UNIT_ASSIGNED",
    "UNIT_AVAILABLE",
    "UNIT_DAMAGED",
    "UNIT_ISSUED",
    "UNIT_MAINTENANCE",
    "UNIT_STATUS_CHOICES",
    "next_request_statuses",
]
