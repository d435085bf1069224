import uuid
from contextvars import ContextVar
from typing import Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")
_actor_ctx: ContextVar[Dict[str, Optional[str]]] = ContextVar("actor", default={})


def get_request_id() -> str:
    rid = _rid_ctx.get()
    if not rid:
        rid = uuid.uuid4().hex
        _rid_ctx.set(rid)
    return rid


def bind_actor(actor_id: Optional[str], tenant_id: Optional[str] = None) -> None:
    """Attach the calling station/operator to the current request for log lines."""
    _actor_ctx.set({"actor_id": actor_id, "tenant_id": tenant_id})


def get_actor_context() -> Dict[str, Optional[str]]:
    return dict(_actor_ctx.get())


class RequestIDMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = "X-Request-ID"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get(self.header_name) or uuid.uuid4().hex
        _rid_ctx.set(rid)
        # actor headers are set by the identity gateway in front of the stations
        bind_actor(request.headers.get("X-Actor-Id"), request.headers.get("X-Tenant-Id"))
        response: Response = await call_next(request)
        response.headers.setdefault(self.header_name, rid)
        return response
