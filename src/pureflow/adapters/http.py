from __future__ import annotations

import json
import os
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

import jsonschema

from ..config import Config, PublishTargetConfig
from .base import (
    AdapterError,
    AdapterTimeoutError,
    GeneratedContent,
    OptimizedContent,
    PipelineServices,
    PublishedPost,
)

GENERATED_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "body"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "body": {"type": "string", "minLength": 1},
        "excerpt": {"type": ["string", "null"]},
    },
}

DRAFT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id"],
    "properties": {"id": {"type": ["string", "integer"]}},
}

OPTIMIZED_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "body"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "body": {"type": "string", "minLength": 1},
        "seo_meta": {"type": ["object", "null"]},
        "suggested_placements": {"type": ["array", "null"]},
    },
}

PUBLISHED_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["post_id"],
    "properties": {
        "post_id": {"type": ["string", "integer"]},
        "url": {"type": ["string", "null"]},
    },
}


class HttpGenerator:
    def __init__(self, url: str, token: str | None = None) -> None:
        self.url = url
        self.token = token

    def generate(self, topic: str, keywords: list[str], timeout: float) -> GeneratedContent:
        response = _http_request(
            "POST",
            self.url,
            _auth_headers(self.token),
            {"topic": topic, "keywords": keywords},
            timeout,
        )
        payload = _validated(GENERATED_SCHEMA, response, "generate")
        return GeneratedContent(
            title=payload["title"],
            body=payload["body"],
            excerpt=payload.get("excerpt") or "",
        )


class HttpDraftStore:
    def __init__(self, url: str, token: str | None = None) -> None:
        self.url = url
        self.token = token

    def create_draft(self, content: GeneratedContent, timeout: float) -> str:
        response = _http_request(
            "POST",
            self.url,
            _auth_headers(self.token),
            {
                "title": content.title,
                "content": content.body,
                "excerpt": content.excerpt,
                "published": False,
            },
            timeout,
        )
        payload = _validated(DRAFT_SCHEMA, response, "create_draft")
        return str(payload["id"])

    def update_article(self, article_id: str, fields: dict[str, Any], timeout: float) -> None:
        url = _join_url(self.url, f"/{urllib.parse.quote(str(article_id))}")
        _http_request("PUT", url, _auth_headers(self.token), fields, timeout)


class HttpOptimizer:
    def __init__(self, url: str, token: str | None = None) -> None:
        self.url = url
        self.token = token

    def optimize(self, article_id: str, keywords: list[str], timeout: float) -> OptimizedContent:
        response = _http_request(
            "POST",
            self.url,
            _auth_headers(self.token),
            {"article_id": article_id, "keywords": keywords},
            timeout,
        )
        payload = _validated(OPTIMIZED_SCHEMA, response, "optimize")
        return OptimizedContent(
            title=payload["title"],
            body=payload["body"],
            seo_meta=dict(payload.get("seo_meta") or {}),
            suggested_placements=list(payload.get("suggested_placements") or []),
        )


class HttpPublishTarget:
    def __init__(self, name: str, url: str, timeout_seconds: float, token: str | None = None) -> None:
        self.name = name
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.token = token

    def publish(self, article_id: str, content: OptimizedContent, timeout: float) -> PublishedPost:
        response = _http_request(
            "POST",
            self.url,
            _auth_headers(self.token),
            {
                "article_id": article_id,
                "title": content.title,
                "content": content.body,
                "seo_meta": content.seo_meta,
            },
            min(timeout, self.timeout_seconds),
        )
        payload = _validated(PUBLISHED_SCHEMA, response, f"publish:{self.name}")
        return PublishedPost(external_post_id=str(payload["post_id"]), url=payload.get("url"))


def build_pipeline_services(config: Config) -> PipelineServices:
    token = os.environ.get(config.adapters.token_env) or None
    return PipelineServices(
        generator=HttpGenerator(config.adapters.generation_url, token),
        draft_store=HttpDraftStore(config.adapters.draft_store_url, token),
        optimizer=HttpOptimizer(config.adapters.optimization_url, token),
        targets=[_build_target(target, token) for target in config.publishing.targets],
    )


def _build_target(target: PublishTargetConfig, token: str | None) -> HttpPublishTarget:
    return HttpPublishTarget(target.name, target.url, target.timeout_seconds, token)


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> Any:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    request.add_header("Accept", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise AdapterError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise AdapterTimeoutError(f"timeout after {timeout:.1f}s") from exc
        raise AdapterError(f"network_error: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise AdapterTimeoutError(f"timeout after {timeout:.1f}s") from exc
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AdapterError(f"invalid_json: {raw[:200]}") from exc


def _validated(schema: dict[str, Any], payload: Any, operation: str) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise AdapterError(f"{operation}_invalid_response: {exc.message}") from exc
    return payload


def _auth_headers(token: str | None) -> dict[str, str]:
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
