from __future__ import annotations

import asyncio
from datetime import datetime
import json
import logging
import os
import time
from typing import Any, Literal, Mapping, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import _env_float


logger = logging.getLogger("glow-reco-agent.run-status")

SCHEMA_VERSION = "0.1"

RunStatusValue = Literal["processing", "completed", "failed"]

PIPELINE_STEPS: tuple[str, ...] = (
    "extracting_criteria",
    "scoring",
    "grouping",
    "building_prompt",
    "awaiting_model",
    "validating",
    "fallback",
    "persisting",
)


class RunStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: str = Field(default=SCHEMA_VERSION)
    run_id: str
    user_id: Optional[str] = None
    status: RunStatusValue = "processing"
    progress: int = 0
    current_step: str = "Initializing"
    active_step: Optional[str] = None
    steps_completed: list[str] = Field(default_factory=list)
    steps_pending: list[str] = Field(default_factory=lambda: list(PIPELINE_STEPS))
    routine_sources: Optional[dict[str, str]] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class RunStatusStore(Protocol):
    async def get(self, run_id: str) -> Optional[RunStatus]: ...

    async def set(self, status: RunStatus, *, ttl_days: Optional[float] = None) -> None: ...

    async def patch(self, run_id: str, partial_update: Mapping[str, Any], *, ttl_days: Optional[float] = None) -> RunStatus: ...

    async def close(self) -> None: ...


def _coerce_ttl_seconds(ttl_days: Optional[float], default_ttl_days: float) -> float:
    days = default_ttl_days if ttl_days is None else float(ttl_days)
    if days <= 0:
        return 0.0
    return days * 86400.0


def _normalize_run_id(run_id: str) -> str:
    if not isinstance(run_id, str):
        raise TypeError("run_id must be a string")
    normalized = run_id.strip()
    if not normalized:
        raise ValueError("run_id must be non-empty")
    if len(normalized) > 200:
        raise ValueError("run_id too long")
    return normalized


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _merge(base: dict[str, Any], patch: Mapping[str, Any], run_id: str) -> dict[str, Any]:
    merged = {**base, **dict(patch)}
    merged["run_id"] = run_id
    merged["schema_version"] = SCHEMA_VERSION
    return RunStatus.model_validate(merged).model_dump(mode="json")


class InMemoryRunStatusStore(RunStatusStore):
    def __init__(self, *, default_ttl_days: float = 1.0) -> None:
        self._default_ttl_days = default_ttl_days
        self._lock = asyncio.Lock()
        self._items: dict[str, tuple[dict[str, Any], Optional[float]]] = {}

    def _expires_at(self, ttl_days: Optional[float]) -> Optional[float]:
        ttl_seconds = _coerce_ttl_seconds(ttl_days, self._default_ttl_days)
        return None if ttl_seconds <= 0 else (time.monotonic() + ttl_seconds)

    async def get(self, run_id: str) -> Optional[RunStatus]:
        key = _normalize_run_id(run_id)
        async with self._lock:
            record = self._items.get(key)
            if not record:
                return None
            data, expires_at = record
            if expires_at is not None and time.monotonic() >= expires_at:
                self._items.pop(key, None)
                return None
            return RunStatus.model_validate(data)

    async def set(self, status: RunStatus, *, ttl_days: Optional[float] = None) -> None:
        key = _normalize_run_id(status.run_id)
        data = status.model_dump(mode="json")
        async with self._lock:
            self._items[key] = (data, self._expires_at(ttl_days))

    async def patch(self, run_id: str, partial_update: Mapping[str, Any], *, ttl_days: Optional[float] = None) -> RunStatus:
        key = _normalize_run_id(run_id)
        async with self._lock:
            base: dict[str, Any] = {}
            record = self._items.get(key)
            if record:
                existing, existing_expires_at = record
                if existing_expires_at is None or time.monotonic() < existing_expires_at:
                    base = dict(existing)
            merged = _merge(base, partial_update, key)
            self._items[key] = (merged, self._expires_at(ttl_days))
        return RunStatus.model_validate(merged)

    async def close(self) -> None:
        return None


class RedisRunStatusStore(RunStatusStore):
    def __init__(
        self,
        *,
        redis_url: str,
        default_ttl_days: float = 1.0,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "glow_reco_run",
    ) -> None:
        self._default_ttl_days = default_ttl_days
        self._key_prefix = key_prefix.strip(":") or "glow_reco_run"
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout_s,
            socket_timeout=socket_timeout_s,
        )

    async def ping(self) -> None:
        await self._redis.ping()

    def _key(self, run_id: str) -> str:
        return f"{self._key_prefix}:{_normalize_run_id(run_id)}"

    async def _write(self, key: str, data: dict[str, Any], ttl_days: Optional[float]) -> None:
        ttl_seconds = _coerce_ttl_seconds(ttl_days, self._default_ttl_days)
        value = _json_dumps(data)
        if ttl_seconds > 0:
            await self._redis.set(key, value, ex=int(max(1.0, ttl_seconds)))
        else:
            await self._redis.set(key, value)

    async def _read(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self._redis.get(key)
        if not raw:
            return None
        try:
            obj = json.loads(raw)
        except ValueError:
            logger.warning("redis_run_status_parse_failed key=%s", key)
            return None
        return obj if isinstance(obj, dict) else None

    async def get(self, run_id: str) -> Optional[RunStatus]:
        data = await self._read(self._key(run_id))
        return RunStatus.model_validate(data) if data else None

    async def set(self, status: RunStatus, *, ttl_days: Optional[float] = None) -> None:
        await self._write(self._key(status.run_id), status.model_dump(mode="json"), ttl_days)

    async def patch(self, run_id: str, partial_update: Mapping[str, Any], *, ttl_days: Optional[float] = None) -> RunStatus:
        key = self._key(run_id)
        base = await self._read(key) or {}
        merged = _merge(base, partial_update, _normalize_run_id(run_id))
        await self._write(key, merged, ttl_days)
        return RunStatus.model_validate(merged)

    async def close(self) -> None:
        await self._redis.aclose()


class PersistentRunStatusStore(RunStatusStore):
    def __init__(
        self,
        *,
        redis_url: Optional[str] = None,
        default_ttl_days: Optional[float] = None,
        connect_timeout_s: float = 1.0,
        socket_timeout_s: float = 1.0,
        key_prefix: str = "glow_reco_run",
    ) -> None:
        self._redis_url = redis_url
        self._default_ttl_days = default_ttl_days
        self._connect_timeout_s = connect_timeout_s
        self._socket_timeout_s = socket_timeout_s
        self._key_prefix = key_prefix
        self._backend: RunStatusStore = InMemoryRunStatusStore(default_ttl_days=self._ttl_days())
        self._backend_kind = "memory"

    @property
    def backend_kind(self) -> str:
        return self._backend_kind

    def _ttl_days(self) -> float:
        if self._default_ttl_days is not None:
            return self._default_ttl_days
        return _env_float("RUN_STATUS_TTL_DAYS", 1.0)

    async def initialize(self) -> None:
        redis_url = (self._redis_url or os.getenv("REDIS_URL") or "").strip() or None
        if not redis_url:
            self._backend = InMemoryRunStatusStore(default_ttl_days=self._ttl_days())
            self._backend_kind = "memory"
            logger.info("run_status_store_backend=memory reason=missing_REDIS_URL")
            return

        try:
            redis_backend = RedisRunStatusStore(
                redis_url=redis_url,
                default_ttl_days=self._ttl_days(),
                connect_timeout_s=self._connect_timeout_s,
                socket_timeout_s=self._socket_timeout_s,
                key_prefix=self._key_prefix,
            )
            await redis_backend.ping()
        except (RedisError, OSError, ValueError) as exc:
            self._backend = InMemoryRunStatusStore(default_ttl_days=self._ttl_days())
            self._backend_kind = "memory"
            logger.warning("run_status_store_backend=memory reason=redis_unavailable err=%s", exc)
            return

        self._backend = redis_backend
        self._backend_kind = "redis"
        logger.info("run_status_store_backend=redis")

    async def get(self, run_id: str) -> Optional[RunStatus]:
        try:
            return await self._backend.get(run_id)
        except RedisError as exc:
            logger.warning("run_status_get_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return None

    async def set(self, status: RunStatus, *, ttl_days: Optional[float] = None) -> None:
        try:
            await self._backend.set(status, ttl_days=ttl_days)
        except RedisError as exc:
            logger.warning("run_status_set_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            await self._backend.set(status, ttl_days=ttl_days)

    async def patch(self, run_id: str, partial_update: Mapping[str, Any], *, ttl_days: Optional[float] = None) -> RunStatus:
        try:
            return await self._backend.patch(run_id, partial_update, ttl_days=ttl_days)
        except RedisError as exc:
            logger.warning("run_status_patch_failed backend=%s err=%s", self._backend_kind, exc)
            await self._fallback_to_memory(reason="redis_error")
            return await self._backend.patch(run_id, partial_update, ttl_days=ttl_days)

    async def _fallback_to_memory(self, *, reason: str) -> None:
        if self._backend_kind == "memory":
            return
        try:
            await self._backend.close()
        except RedisError:
            pass
        self._backend = InMemoryRunStatusStore(default_ttl_days=self._ttl_days())
        self._backend_kind = "memory"
        logger.warning("run_status_store_backend=memory reason=%s", reason)

    async def close(self) -> None:
        await self._backend.close()


def _complete(status: RunStatus, steps: list[str]) -> dict[str, Any]:
    completed = list(status.steps_completed)
    for step in steps:
        if step and step not in completed:
            completed.append(step)
    return {
        "steps_completed": completed,
        "steps_pending": [s for s in status.steps_pending if s not in completed],
    }


def mark_step(status: RunStatus, step: str, progress: int) -> dict[str, Any]:
    """Enter ``step``; the previously active step is the one that completes."""
    previous = status.active_step if status.active_step != step else None
    patch = _complete(status, [previous] if previous else [])
    patch["steps_pending"] = [s for s in patch["steps_pending"] if s != step]
    patch.update({"progress": progress, "current_step": f"Processing {step.replace('_', ' ')}", "active_step": step})
    return patch


def finish_steps(status: RunStatus, *extra: str) -> dict[str, Any]:
    steps = [status.active_step] if status.active_step else []
    patch = _complete(status, [*steps, *extra])
    patch["active_step"] = None
    return patch


RUN_STATUS_STORE = PersistentRunStatusStore()
