from __future__ import annotations

import os

from fastapi import APIRouter

from app.store.run_status import RUN_STATUS_STORE

router = APIRouter()


def _get_commit_sha() -> str | None:
    for key in (
        "RAILWAY_GIT_COMMIT_SHA",
        "GITHUB_SHA",
        "COMMIT_SHA",
        "GIT_SHA",
    ):
        value = os.getenv(key)
        if value:
            return value
    return None


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "service": "glow-reco-agent",
        "commit_sha": _get_commit_sha(),
        "environment": os.getenv("RAILWAY_ENVIRONMENT_NAME") or os.getenv("ENVIRONMENT"),
        "run_status_store_backend": RUN_STATUS_STORE.backend_kind,
    }
