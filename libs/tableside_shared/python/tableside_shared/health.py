from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI

_log = logging.getLogger("tableside.health")


def add_standard_health(
    app: FastAPI,
    env_key: str = "ENV",
    checks: Optional[Dict[str, Callable[[], Any]]] = None,
):
    """
    Register ``GET /health``.

    Each entry in ``checks`` is called on every probe; its return value is
    reported under its name. A check that raises marks the service degraded
    instead of failing the probe.
    """

    @app.get("/health")
    def _health():
        status = "ok"
        results: Dict[str, Any] = {}
        for name, fn in (checks or {}).items():
            try:
                results[name] = fn()
            except Exception as e:
                _log.warning("health check %s failed: %s", name, e)
                results[name] = {"error": str(e)}
                status = "degraded"
        return {
            "status": status,
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
            "checks": results,
        }
