from __future__ import annotations

from typing import Iterable, List, Tuple

from fastapi.middleware.cors import CORSMiddleware

# Station screens run on the local network during service.
DEV_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")

ACTOR_HEADERS = ("X-Actor-Id", "X-Actor-Role", "X-Actor-Name", "X-Tenant-Id")


def parse_origins(allowed: str | None) -> Tuple[List[str], bool]:
    """Split ``ALLOWED_ORIGINS`` into (origins, allow_credentials)."""
    origins = [o.strip().rstrip("/") for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        return list(DEV_ORIGINS), True
    if "*" in origins:
        return ["*"], False
    return sorted(set(origins)), True


def configure_cors(app, allowed: str | None, expose: Iterable[str] = ("X-Request-ID",)):
    """Station UIs (waiter tablets, kitchen screens, till) run on their own origins."""
    origins, credentials = parse_origins(allowed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=credentials,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Content-Type", "Idempotency-Key", "X-Request-ID", "X-Internal-Secret", *ACTOR_HEADERS],
        expose_headers=list(expose),
    )
