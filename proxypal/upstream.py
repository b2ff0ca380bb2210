from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from proxypal.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_LOG_LINES = 200
SUMMARY_LOG_LINES = 200

# Console provider id -> management endpoint holding its API keys
PROVIDER_ENDPOINTS = {
    "gemini": "gemini-api-key",
    "claude": "claude-api-key",
    "codex": "codex-api-key",
    "vertex": "vertex-api-key",
}
CLIENT_KEYS_ENDPOINT = "api-keys"

# Statuses meaning the upstream has no per-entry add/delete, only a whole-list PUT
LIST_FALLBACK_STATUSES = {404, 405, 501}


@dataclass(frozen=True)
class UpstreamResult:
    ok: bool
    status: int
    data: Any = None


def clamp_log_lines(value: Optional[str]) -> int:
    try:
        n = float(value) if value is not None else float(DEFAULT_LOG_LINES)
    except ValueError:
        return DEFAULT_LOG_LINES
    if not math.isfinite(n):
        return DEFAULT_LOG_LINES
    return min(1000, max(10, math.trunc(n)))


def extract_array(value: Any, wrapper_key: Optional[str] = None) -> list:
    """List payload of a management response, bare or wrapped in `wrapper_key`."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        if wrapper_key and isinstance(value.get(wrapper_key), list):
            return value[wrapper_key]
        if isinstance(value.get("files"), list):
            return value["files"]
    return []


def error_message(result: UpstreamResult, fallback: str) -> str:
    if result.status == 0:
        return "Unable to reach CLIProxyAPI"
    data = result.data
    if isinstance(data, dict):
        msg = data.get("error") or data.get("message")
        if isinstance(msg, str) and msg:
            return msg
    return fallback or f"Request returned {result.status}"


class UpstreamClient:
    """Short-lived async client for the upstream management API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._settings = settings
        self._transport = transport

    def management_headers(self) -> dict[str, str]:
        return {"X-Management-Key": self._settings.management_key}

    def proxy_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._settings.proxy_api_key}"}

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        data: Optional[dict[str, str]] = None,
        files: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> UpstreamResult:
        try:
            async with httpx.AsyncClient(
                base_url=self._settings.upstream_base_url,
                timeout=self._settings.upstream_timeout,
                transport=self._transport,
            ) as client:
                resp = await client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    data=data,
                    files=files,
                    headers=headers if headers is not None else self.management_headers(),
                )
        except httpx.HTTPError as exc:
            logger.warning("Upstream %s %s unreachable: %s", method, path, exc)
            return UpstreamResult(ok=False, status=0)
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not resp.is_success:
            logger.info("Upstream %s %s returned %s", method, path, resp.status_code)
        return UpstreamResult(ok=resp.is_success, status=resp.status_code, data=body)

    async def get_json(
        self,
        path: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> UpstreamResult:
        return await self.request("GET", path, params=params, headers=headers)

    async def management(self, endpoint: str) -> UpstreamResult:
        return await self.get_json(f"/v0/management/{endpoint}")


def relay(result: UpstreamResult) -> JSONResponse:
    if result.status == 0:
        return JSONResponse({"error": "Upstream unavailable"}, status_code=502)
    if not result.ok:
        code = result.status if result.status >= 400 else 502
        return JSONResponse({"error": "Upstream request failed", "status": result.status}, status_code=code)
    if result.data is None:
        return JSONResponse({"error": "Upstream returned no JSON"}, status_code=502)
    return JSONResponse(result.data)


def relay_change(result: UpstreamResult, fallback_error: str) -> JSONResponse:
    if not result.ok:
        code = result.status if result.status >= 400 else 502
        return JSONResponse({"ok": False, "error": error_message(result, fallback_error)}, status_code=code)
    return JSONResponse({"ok": True, "data": result.data})


def _client(request: Request) -> UpstreamClient:
    settings = request.app.state.settings_loader()
    return UpstreamClient(settings, transport=request.app.state.upstream_transport)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _endpoint(provider: str) -> str:
    if provider in PROVIDER_ENDPOINTS:
        return PROVIDER_ENDPOINTS[provider]
    if provider in PROVIDER_ENDPOINTS.values():
        return provider
    raise HTTPException(status_code=404, detail="Unknown provider")


def _updated_at() -> str:
    return datetime.now(timezone.utc).isoformat()


router = APIRouter(prefix="/api/proxy")


@router.get("/usage")
async def usage(request: Request) -> JSONResponse:
    return relay(await _client(request).management("usage"))


@router.get("/logs")
async def logs(request: Request) -> JSONResponse:
    lines = clamp_log_lines(request.query_params.get("lines"))
    return relay(await _client(request).get_json("/v0/management/logs", params={"lines": lines}))


@router.get("/models")
async def models(request: Request) -> JSONResponse:
    client = _client(request)
    return relay(await client.get_json("/v1/models", headers=client.proxy_headers()))


@router.get("/providers")
async def providers(request: Request) -> JSONResponse:
    return relay(await _client(request).get_json("/api/auth/status"))


@router.get("/auth-files")
async def auth_files(request: Request) -> JSONResponse:
    return relay(await _client(request).management("auth-files"))


@router.post("/auth-files")
async def upload_auth_file(request: Request) -> JSONResponse:
    provider = filename = ""
    content: Optional[bytes] = None

    if "application/json" in request.headers.get("content-type", ""):
        body = await _json_body(request)
        body = body if isinstance(body, dict) else {}
        provider = body.get("provider") if isinstance(body.get("provider"), str) else ""
        filename = body.get("filename") if isinstance(body.get("filename"), str) else ""
        if isinstance(body.get("content"), str):
            content = body["content"].encode("utf-8")
    else:
        form = await request.form()
        provider = str(form.get("provider") or "")
        filename = str(form.get("filename") or "")
        uploaded = form.get("file")
        if isinstance(uploaded, UploadFile):
            content = await uploaded.read()
            filename = filename or uploaded.filename or ""

    if not provider or content is None:
        return JSONResponse({"ok": False, "error": "Missing provider or file payload."}, status_code=400)

    fields = {"provider": provider}
    if filename:
        fields["filename"] = filename
    result = await _client(request).request(
        "POST",
        "/v0/management/auth-files",
        data=fields,
        files={"file": (filename or "auth.json", content, "application/json")},
    )
    return relay_change(result, "Upload failed")


@router.patch("/auth-files")
async def toggle_auth_file(request: Request) -> JSONResponse:
    body = await _json_body(request)
    body = body if isinstance(body, dict) else {}
    name = next((body[k] for k in ("name", "id", "fileId") if isinstance(body.get(k), str) and body[k]), "")
    if isinstance(body.get("disabled"), bool):
        disabled: Optional[bool] = body["disabled"]
    elif isinstance(body.get("enabled"), bool):
        disabled = not body["enabled"]
    else:
        disabled = None

    if not name or disabled is None:
        return JSONResponse({"ok": False, "error": "Missing auth file name or disabled flag."}, status_code=400)

    result = await _client(request).request(
        "PATCH",
        "/v0/management/auth-files",
        params={"name": name},
        json={"name": name, "disabled": disabled},
    )
    return relay_change(result, "Toggle failed")


@router.get("/api-keys")
async def all_provider_keys(request: Request) -> JSONResponse:
    client = _client(request)
    results = await asyncio.gather(*(client.management(ep) for ep in PROVIDER_ENDPOINTS.values()))
    out = []
    for (pid, endpoint), result in zip(PROVIDER_ENDPOINTS.items(), results):
        keys = extract_array(result.data, endpoint) if result.ok else []
        out.append(
            {
                "id": pid,
                "endpoint": endpoint,
                "keys": keys,
                "count": len(keys),
                "error": None if result.ok else error_message(result, f"Request returned {result.status}"),
            }
        )
    running = any(p["count"] > 0 or p["error"] is None for p in out)
    return JSONResponse({"running": running, "providers": out, "updatedAt": _updated_at()})


@router.get("/api-keys/{provider}")
async def provider_keys(provider: str, request: Request) -> JSONResponse:
    return relay(await _client(request).management(_endpoint(provider)))


async def _put_key_list(client: UpstreamClient, endpoint: str, entries: list) -> UpstreamResult:
    return await client.request("PUT", f"/v0/management/{endpoint}", json=entries)


async def _add_via_list(client: UpstreamClient, endpoint: str, entry: Any) -> UpstreamResult:
    current = await client.management(endpoint)
    if not current.ok:
        return current
    return await _put_key_list(client, endpoint, [*extract_array(current.data, endpoint), entry])


async def _delete_via_list(client: UpstreamClient, endpoint: str, body: dict) -> UpstreamResult:
    current = await client.management(endpoint)
    if not current.ok:
        return current
    entries = list(extract_array(current.data, endpoint))
    index = body.get("index")
    if isinstance(index, int) and not isinstance(index, bool):
        if not 0 <= index < len(entries):
            return UpstreamResult(ok=False, status=404)
        del entries[index]
    else:
        key = body.get("api-key")
        pos = next((i for i, e in enumerate(entries) if isinstance(e, dict) and e.get("api-key") == key), None)
        if key is None or pos is None:
            return UpstreamResult(ok=False, status=404)
        del entries[pos]
    return await _put_key_list(client, endpoint, entries)


def _key_change_response(result: UpstreamResult) -> JSONResponse:
    if result.ok:
        return JSONResponse({"ok": True})
    return JSONResponse({"error": error_message(result, f"Request returned {result.status}")}, status_code=502)


@router.post("/api-keys/{provider}")
async def add_provider_key(provider: str, request: Request) -> JSONResponse:
    endpoint = _endpoint(provider)
    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Missing request body"}, status_code=400)

    client = _client(request)
    result = await client.request("POST", f"/v0/management/{endpoint}", json=body)
    if not result.ok and result.status in LIST_FALLBACK_STATUSES:
        logger.info("Upstream has no POST for %s, rewriting the whole list", endpoint)
        result = await _add_via_list(client, endpoint, body)
    return _key_change_response(result)


@router.delete("/api-keys/{provider}")
async def delete_provider_key(provider: str, request: Request) -> JSONResponse:
    endpoint = _endpoint(provider)
    body = await _json_body(request)
    if not isinstance(body, dict):
        return JSONResponse({"error": "Missing request body"}, status_code=400)

    client = _client(request)
    result = await client.request("DELETE", f"/v0/management/{endpoint}", json=body)
    if not result.ok and result.status in LIST_FALLBACK_STATUSES:
        logger.info("Upstream has no DELETE for %s, rewriting the whole list", endpoint)
        result = await _delete_via_list(client, endpoint, body)
    return _key_change_response(result)


def _client_key_list(result: UpstreamResult) -> list[str]:
    return [k for k in extract_array(result.data, CLIENT_KEYS_ENDPOINT) if isinstance(k, str) and k.strip()]


@router.get("/client-keys")
async def client_keys(request: Request) -> JSONResponse:
    return relay(await _client(request).management(CLIENT_KEYS_ENDPOINT))


@router.post("/client-keys")
async def add_client_key(request: Request) -> JSONResponse:
    body = await _json_body(request)
    body = body if isinstance(body, dict) else {}
    raw = next((body[k] for k in ("key", "value", "apiKey") if isinstance(body.get(k), str)), "")
    key = raw.strip()
    if not key:
        return JSONResponse({"error": "key is required"}, status_code=400)

    client = _client(request)
    current = await client.management(CLIENT_KEYS_ENDPOINT)
    if not current.ok:
        return JSONResponse({"error": error_message(current, f"Endpoint returned {current.status}")}, status_code=502)
    keys = _client_key_list(current)
    if key not in keys:
        keys.append(key)
    updated = await _put_key_list(client, CLIENT_KEYS_ENDPOINT, keys)
    if not updated.ok:
        return JSONResponse({"error": error_message(updated, f"Endpoint returned {updated.status}")}, status_code=502)
    return JSONResponse({"ok": True, "keys": keys, "count": len(keys)})


@router.delete("/client-keys")
async def delete_client_key(request: Request) -> JSONResponse:
    body = await _json_body(request)
    body = body if isinstance(body, dict) else {}
    key = body["key"].strip() if isinstance(body.get("key"), str) else ""
    index = body.get("index")
    if isinstance(index, bool) or not isinstance(index, int):
        index = None
    if not key and index is None:
        return JSONResponse({"error": "key or index is required"}, status_code=400)

    client = _client(request)
    params = {"index": index} if index is not None else {"value": key}
    result = await client.request("DELETE", f"/v0/management/{CLIENT_KEYS_ENDPOINT}", params=params)
    if not result.ok:
        return JSONResponse({"error": error_message(result, f"Endpoint returned {result.status}")}, status_code=502)
    keys = _client_key_list(await client.management(CLIENT_KEYS_ENDPOINT))
    return JSONResponse({"ok": True, "keys": keys, "count": len(keys)})


def _usage_field(usage: dict, snake: str, camel: str) -> Any:
    value = usage.get(snake)
    return usage.get(camel) if value is None else value


@router.get("/summary")
async def summary(request: Request) -> JSONResponse:
    client = _client(request)
    key_endpoints = [*PROVIDER_ENDPOINTS.values(), CLIENT_KEYS_ENDPOINT]
    status, files, log_result, usage_result, model_result, *key_results = await asyncio.gather(
        client.get_json("/api/auth/status"),
        client.management("auth-files"),
        client.get_json("/v0/management/logs", params={"lines": SUMMARY_LOG_LINES}),
        client.management("usage"),
        client.get_json("/v1/models", headers=client.proxy_headers()),
        *(client.management(ep) for ep in key_endpoints),
    )

    connected = accounts = 0
    auth_providers = status.data.get("providers") if status.ok and isinstance(status.data, dict) else None
    for p in (auth_providers or {}).values():
        if not isinstance(p, dict):
            continue
        n = p.get("accounts") if isinstance(p.get("accounts"), int) else 0
        if p.get("authenticated") or n > 0:
            connected += 1
            accounts += n or 1

    log_lines = log_result.data.get("lines") if log_result.ok and isinstance(log_result.data, dict) else None
    usage_data = usage_result.data.get("usage") if usage_result.ok and isinstance(usage_result.data, dict) else None
    usage_data = usage_data if isinstance(usage_data, dict) else {}
    key_counts = [
        len(extract_array(r.data, ep)) if r.ok else 0 for ep, r in zip(key_endpoints, key_results)
    ]

    return JSONResponse(
        {
            "running": status.ok or model_result.ok,
            "connectedProviders": connected,
            "totalAccounts": accounts,
            "authFilesCount": len(extract_array(files.data, "files")) if files.ok else 0,
            "logsCount": len(log_lines) if isinstance(log_lines, list) else 0,
            "totalTokens": _usage_field(usage_data, "total_tokens", "totalTokens"),
            "totalRequests": _usage_field(usage_data, "total_requests", "totalRequests") or 0,
            "successCount": _usage_field(usage_data, "success_count", "successCount") or 0,
            "failureCount": _usage_field(usage_data, "failure_count", "failureCount") or 0,
            "apiKeysCount": sum(key_counts[:-1]),
            "clientKeysCount": key_counts[-1],
            "updatedAt": _updated_at(),
        }
    )
