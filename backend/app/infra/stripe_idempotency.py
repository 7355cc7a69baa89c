from __future__ import annotations

import hashlib
import json
from typing import Any


def _stable_extra_value(value: Any) -> str:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def make_stripe_idempotency_key(
    purpose: str,
    *,
    reservation_id: str | None = None,
    order_id: str | None = None,
    amount_cents: int | None = None,
    currency: str | None = None,
    extra: dict | None = None,
) -> str:
    """Deterministic idempotency key for a Stripe mutation.

    Retrying the same logical operation (same reservation, amount and
    currency) yields the same key, so Stripe replays the original response
    instead of opening a second checkout session.

    Format: ``<purpose prefix>-<sha256 hex, 32 chars>``.
    """
    parts: list[str] = [purpose]
    if reservation_id is not None:
        parts.append(f"r:{reservation_id}")
    if order_id is not None:
        parts.append(f"o:{order_id}")
    if amount_cents is not None:
        parts.append(f"a:{amount_cents}")
    if currency is not None:
        parts.append(f"c:{currency.lower()}")
    if extra:
        for key in sorted(extra):
            parts.append(f"x:{key}:{_stable_extra_value(extra[key])}")

    digest = hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
    prefix = purpose[:12].replace("_", "-").rstrip("-")
    return f"{prefix}-{digest}"
