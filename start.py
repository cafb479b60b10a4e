from __future__ import annotations

import os

import uvicorn


def main() -> None:
    port = int(os.environ.get("PORT") or "8080")
    host = os.environ.get("HOST") or "0.0.0.0"
    log_level = (os.environ.get("LOG_LEVEL") or "info").lower()
    uvicorn.run("app.main:app", host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()
