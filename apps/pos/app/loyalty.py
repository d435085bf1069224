from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import LOYALTY_BASE_URL, LOYALTY_TIMEOUT_SECS

_log = logging.getLogger("tableside.pos.loyalty")


def award_points(order_id: str, customer_id: str, settled_cents: int) -> Optional[int]:
    """
    Ask the loyalty service to credit a settled order.

    Best effort: the settlement is already committed, so any failure is
    logged and reported as ``None``.
    """
    if not LOYALTY_BASE_URL:
        return None
    url = LOYALTY_BASE_URL.rstrip("/") + "/points/award"
    body = {"order_id": order_id, "customer_id": customer_id, "amount_cents": settled_cents}
    try:
        r = httpx.post(url, json=body, timeout=LOYALTY_TIMEOUT_SECS)
        r.raise_for_status()
        data = r.json() if r.headers.get("content-type", "").startswith("application/json") else {}
        if not isinstance(data, dict):
            raise ValueError(f"unexpected reply {data!r}")
        return int(data.get("points") or 0)
    except (httpx.HTTPError, ValueError, TypeError) as e:
        _log.warning("loyalty award for order %s failed: %s", order_id, e)
        return None
