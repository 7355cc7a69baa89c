from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from app.domain.catalog.db_models import Service

DepositType = Literal["flat", "percent"]


@dataclass(frozen=True)
class DepositPolicy:
    """Deposit rule attached to a service or used as the shop-wide default.

    ``flat`` values are expressed in cents, ``percent`` values in whole
    percent of the service price.
    """

    deposit_type: DepositType
    value: int

    def __post_init__(self) -> None:
        if self.deposit_type not in ("flat", "percent"):
            raise ValueError(f"Unknown deposit type: {self.deposit_type}")
        if self.value < 0:
            raise ValueError("Deposit value must not be negative")
        if self.deposit_type == "percent" and self.value > 100:
            raise ValueError("Percent deposit must be between 0 and 100")


def compute_deposit_cents(price_cents: int, policy: DepositPolicy | None) -> int:
    if policy is None or policy.value <= 0 or price_cents <= 0:
        return 0
    if policy.deposit_type == "flat":
        return min(policy.value, price_cents)
    # Half-up rounding on integer cents.
    return (price_cents * policy.value + 50) // 100


def resolve_deposit_policy(
    service: Service,
    *,
    deposits_enabled: bool,
    default_policy: DepositPolicy | None,
) -> DepositPolicy | None:
    if not deposits_enabled:
        return None
    override = service.deposit
    if override is not None:
        return DepositPolicy(deposit_type=override.deposit_type, value=override.deposit_value)  # type: ignore[arg-type]
    return default_policy


def deposit_due_cents(
    service: Service,
    *,
    deposits_enabled: bool,
    default_policy: DepositPolicy | None,
) -> int:
    policy = resolve_deposit_policy(
        service, deposits_enabled=deposits_enabled, default_policy=default_policy
    )
    return compute_deposit_cents(service.price_cents, policy)
