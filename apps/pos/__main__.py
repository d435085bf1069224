"""
Convenience entrypoint to run the POS service with uvicorn.

Example:
  python -m apps.pos
"""
import os

import uvicorn


def main() -> None:
    reload = os.getenv("POS_RELOAD", "false").lower() == "true"
    host = os.getenv("POS_HOST", "0.0.0.0")
    port = int(os.getenv("POS_PORT", "8080"))
    uvicorn.run(
        "apps.pos.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
