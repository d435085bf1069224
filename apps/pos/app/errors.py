"""
Error taxonomy of the fulfillment and settlement engine.

All errors are ``HTTPException`` subclasses: routes let them propagate and
FastAPI renders them, while in-process callers can catch the specific class.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import HTTPException

_log = logging.getLogger("tableside.pos.errors")


class PosError(HTTPException):
    status_code = 400

    def __init__(self, detail: str, status_code: Optional[int] = None, **context: Any):
        super().__init__(status_code=status_code or self.status_code, detail=detail)
        self.context = context


# --- validation: bad input, nothing mutated ---
class ValidationError(PosError):
    status_code = 422


class NotFound(ValidationError):
    status_code = 404


# --- conflict: expected business conditions, caller decides ---
class ConflictError(PosError):
    status_code = 409


class InsufficientStock(ConflictError):
    def __init__(self, product_id: int, requested: int, remaining: int):
        super().__init__(
            f"insufficient stock for product {product_id}: requested {requested}, remaining {remaining}",
            product_id=product_id,
            requested=requested,
            remaining=remaining,
        )
        self.product_id = product_id
        self.requested = requested
        self.remaining = remaining


class InvalidTransition(ConflictError):
    def __init__(self, entity: str, current: str, target: str, entity_id: Any = None):
        ref = f" {entity_id}" if entity_id is not None else ""
        super().__init__(
            f"invalid transition for {entity}{ref}: {current} -> {target}",
            entity=entity,
            current=current,
            target=target,
        )
        self.current = current
        self.target = target


class OrderAlreadySettled(ConflictError):
    def __init__(self, order_id: str):
        super().__init__(f"order {order_id} is already settled", order_id=order_id)


# --- fatal: invariant broken, transaction must abort ---
class ConsistencyViolation(PosError):
    status_code = 500

    def __init__(self, detail: str, **context: Any):
        _log.error("consistency violation: %s %s", detail, context)
        super().__init__(detail, **context)


class Unauthorized(PosError):
    status_code = 403
