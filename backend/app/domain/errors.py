from dataclasses import dataclass
from typing import List

PROBLEM_TYPE_SLOT_UNAVAILABLE = "https://example.com/problems/slot-unavailable"
PROBLEM_TYPE_INVALID_TRANSITION = "https://example.com/problems/invalid-transition"
PROBLEM_TYPE_NOT_FOUND = "https://example.com/problems/not-found"
PROBLEM_TYPE_INSUFFICIENT_INVENTORY = "https://example.com/problems/insufficient-inventory"


@dataclass
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None
    status: int = 400


@dataclass
class SlotUnavailableError(DomainError):
    detail: str = "This time slot is no longer available. Please select another time."
    title: str = "Slot Unavailable"
    type: str = PROBLEM_TYPE_SLOT_UNAVAILABLE
    status: int = 409


@dataclass
class InvalidTransitionError(DomainError):
    title: str = "Invalid Status Transition"
    type: str = PROBLEM_TYPE_INVALID_TRANSITION
    status: int = 409


@dataclass
class NotFoundError(DomainError):
    title: str = "Not Found"
    type: str = PROBLEM_TYPE_NOT_FOUND
    status: int = 404


@dataclass
class InsufficientInventoryError(DomainError):
    detail: str = "Some items in your cart are no longer available in the requested quantity."
    title: str = "Insufficient Inventory"
    type: str = PROBLEM_TYPE_INSUFFICIENT_INVENTORY
    status: int = 409
