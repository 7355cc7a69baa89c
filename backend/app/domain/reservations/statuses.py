from enum import Enum


class ReservationStatus(str, Enum):
    HOLD = "hold"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


TERMINAL_STATUSES = frozenset(
    {
        ReservationStatus.CANCELLED,
        ReservationStatus.EXPIRED,
        ReservationStatus.COMPLETED,
        ReservationStatus.NO_SHOW,
    }
)

RESERVATION_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.HOLD: frozenset(
        {ReservationStatus.CONFIRMED, ReservationStatus.EXPIRED, ReservationStatus.CANCELLED}
    ),
    ReservationStatus.CONFIRMED: frozenset(
        {ReservationStatus.CANCELLED, ReservationStatus.COMPLETED, ReservationStatus.NO_SHOW}
    ),
    # Terminal statuses only leave through the admin restore override.
    ReservationStatus.CANCELLED: frozenset({ReservationStatus.CONFIRMED}),
    ReservationStatus.EXPIRED: frozenset({ReservationStatus.CONFIRMED}),
    ReservationStatus.COMPLETED: frozenset({ReservationStatus.CONFIRMED}),
    ReservationStatus.NO_SHOW: frozenset({ReservationStatus.CONFIRMED}),
}

# Transitions reachable from the admin console.
ADMIN_TARGETS = frozenset(
    {
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
        ReservationStatus.COMPLETED,
        ReservationStatus.NO_SHOW,
    }
)


def is_transition_allowed(current: ReservationStatus | str, target: ReservationStatus | str) -> bool:
    current_status = ReservationStatus(current)
    target_status = ReservationStatus(target)
    return target_status in RESERVATION_TRANSITIONS.get(current_status, frozenset())
