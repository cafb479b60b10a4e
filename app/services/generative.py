from __future__ import annotations

import json
import logging
from typing import Any, Optional, Protocol, Union

import httpx

from app.services.errors import GenerativeCallError


logger = logging.getLogger("glow-reco-agent.generative")


GenerativeOutput = Union[str, dict[str, Any]]


class GenerativeClient(Protocol):
    async def generate(self, prompt: str, *, response_schema: Optional[dict[str, Any]] = None) -> GenerativeOutput: ...


class UnconfiguredGenerativeClient:
    async def generate(self, prompt: str, *, response_schema: Optional[dict[str, Any]] = None) -> GenerativeOutput:
        raise GenerativeCallError("generative service is not configured")


class HttpGenerativeClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_s: float = 30.0,
        path: str = "/v1/generate",
    ) -> None:
        self._url = f"{base_url.rstrip('/')}{path}"
        self._api_key = api_key
        self._model = model
        self._timeout_s = timeout_s

    async def generate(self, prompt: str, *, response_schema: Optional[dict[str, Any]] = None) -> GenerativeOutput:
        payload: dict[str, Any] = {"prompt": prompt}
        if response_schema:
            payload["response_schema"] = response_schema
            payload["response_mime_type"] = "application/json"
        if self._model:
            payload["model"] = self._model

        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                res = await client.post(self._url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise GenerativeCallError("generative transport failed", detail=str(exc)) from exc

        if res.status_code >= 400:
            raise GenerativeCallError(
                f"generative service returned {res.status_code}",
                detail=res.text[:500],
            )

        try:
            data = res.json()
        except Exception:
            return res.text

        return _unwrap_output(data)


def _unwrap_output(data: Any) -> GenerativeOutput:
    if isinstance(data, dict):
        for key in ("output", "json", "result"):
            if isinstance(data.get(key), dict):
                return data[key]
        for key in ("text", "content", "answer"):
            if isinstance(data.get(key), str):
                return data[key]
        return data
    if isinstance(data, str):
        return data
    return json.dumps(data)


def build_generative_client(
    *,
    base_url: Optional[str],
    api_key: Optional[str] = None,
    model: Optional[str] = None,
    timeout_s: float = 30.0,
) -> GenerativeClient:
    if not base_url:
        logger.info("generative_client=unconfigured reason=missing_GENERATIVE_BASE_URL")
        return UnconfiguredGenerativeClient()
    return HttpGenerativeClient(base_url=base_url, api_key=api_key, model=model, timeout_s=timeout_s)


def extract_json_object(text: str) -> Optional[dict[str, Any]]:
    if not text:
        return None

    for start in (i for i, ch in enumerate(text) if ch == "{"):
        candidate = _extract_braced(text, start)
        if not candidate:
            continue
        try:
            obj = json.loads(candidate)
        except Exception:
            continue
        if isinstance(obj, dict):
            return obj

    return None


def _extract_braced(text: str, start: int) -> Optional[str]:
    depth = 0
    in_str = False
    escape = False
    end: Optional[int] = None

    for i in range(start, len(text)):
        ch = text[i]
        if in_str:
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_str = False
            continue

        if ch == '"':
            in_str = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = i
                break

    if end is None or depth != 0:
        return None
    return text[start : end + 1]
