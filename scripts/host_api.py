#!/usr/bin/env python3
"""Typed wrapper over the host application's v1 REST API."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from rate_limited_client import (
    OUTCOME_INCONCLUSIVE,
    RateLimitedClient,
    RateLimiterState,
    RequestOutcome,
)
from redaction import endpoint_for_diagnostics, redact

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
API_KEY_HEADER = "X-Api-Key"
DEFAULT_TIMEOUT_SECONDS = 30.0

COMPONENT_KINDS = ("indexer", "downloadclient", "importlist")
TESTABLE_KINDS = ("indexer", "downloadclient")


class HostApiError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str = "", body: str = "") -> None:
        super().__init__(redact(message))
        self.status_code = status_code
        self.endpoint = endpoint
        self.body = redact(body)


class HostApiTimeout(HostApiError):
    def __init__(self, message: str, *, endpoint: str, timeout_seconds: float, operation: str) -> None:
        super().__init__(message, endpoint=endpoint)
        self.timeout_seconds = timeout_seconds
        self.operation = operation


class HostApiInconclusive(HostApiError):
    """The host kept rate limiting; no verdict is possible."""


class PollTimeout(Exception):
    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        timeout_seconds: float,
        operation: str,
        phase: str,
        timeout_type: str = "command_poll",
    ) -> None:
        super().__init__(message)
        self.timeout_type = timeout_type
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.operation = operation
        self.phase = phase


@dataclass(frozen=True)
class SchemaField:
    name: str
    value: Any = None
    label: str | None = None
    type: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "SchemaField":
        return cls(
            name=str(payload.get("name") or ""),
            value=payload.get("value"),
            label=payload.get("label"),
            type=payload.get("type"),
        )

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.label is not None:
            out["label"] = self.label
        if self.type is not None:
            out["type"] = self.type
        return out


@dataclass(frozen=True)
class ComponentDefinition:
    kind: str
    id: int | None
    name: str | None
    implementation: str | None
    config_contract: str | None = None
    fields: tuple[SchemaField, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, kind: str, payload: dict[str, Any]) -> "ComponentDefinition":
        raw_fields = payload.get("fields")
        fields = tuple(
            SchemaField.from_payload(item)
            for item in (raw_fields if isinstance(raw_fields, list) else [])
            if isinstance(item, dict)
        )
        raw_id = payload.get("id")
        return cls(
            kind=kind,
            id=raw_id if isinstance(raw_id, int) and not isinstance(raw_id, bool) else None,
            name=payload.get("name"),
            implementation=payload.get("implementation"),
            config_contract=payload.get("configContract"),
            fields=fields,
            raw=dict(payload),
        )

    def with_values(self, name: str, values: dict[str, Any]) -> dict[str, Any]:
        """Creation payload from a schema entry with ``values`` applied by field name."""
        lowered = {key.lower(): value for key, value in values.items()}
        fields = []
        for item in self.fields:
            payload = item.to_payload()
            if item.name.lower() in lowered:
                payload["value"] = lowered[item.name.lower()]
            fields.append(payload)
        body = {key: value for key, value in self.raw.items() if key not in ("id", "fields")}
        body.update({"name": name, "implementation": self.implementation, "fields": fields})
        if self.config_contract is not None:
            body["configContract"] = self.config_contract
        return body


def find_field(fields: tuple[SchemaField, ...] | list[SchemaField], name: str) -> SchemaField | None:
    wanted = name.strip().lower()
    for item in fields:
        if item.name.strip().lower() == wanted:
            return item
    return None


def field_map(component: ComponentDefinition) -> dict[str, Any]:
    return {item.name.lower(): item.value for item in component.fields if item.name}


class HostApi:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        client: httpx.Client | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        limiter_state: RateLimiterState | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self._http = client or httpx.Client(timeout=timeout_seconds)
        self._headers = {API_KEY_HEADER: api_key, "Accept": "application/json"}
        self.requests = RateLimitedClient(
            self._http,
            limiter_state or RateLimiterState(),
            max_retries=max_retries,
            sleep=sleep,
        )

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "HostApi":
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def url(self, path: str) -> str:
        return f"{self.base_url}{API_PREFIX}{path}"

    def raw_request(
        self,
        method: str,
        path: str,
        *,
        api_key: str | None = None,
        expect_failure: bool = False,
        expect_status: set[int] | None = None,
        **kwargs: Any,
    ) -> RequestOutcome:
        headers = dict(self._headers)
        if api_key is not None:
            headers[API_KEY_HEADER] = api_key
        return self.requests.request(
            method,
            self.url(path),
            headers=headers,
            timeout=self.timeout_seconds,
            expect_failure=expect_failure,
            expect_status=expect_status,
            **kwargs,
        )

    def _call(self, method: str, path: str, operation: str, **kwargs: Any) -> Any:
        url = self.url(path)
        endpoint = endpoint_for_diagnostics(url)
        outcome = self.raw_request(method, path, **kwargs)
        if outcome.timed_out:
            raise HostApiTimeout(
                f"{operation} timed out after {self.timeout_seconds}s ({endpoint})",
                endpoint=endpoint,
                timeout_seconds=self.timeout_seconds,
                operation=operation,
            )
        if outcome.status == OUTCOME_INCONCLUSIVE:
            raise HostApiInconclusive(
                f"{operation} was rate limited (HTTP 429) after {outcome.attempts} attempts ({endpoint})",
                status_code=outcome.status_code,
                endpoint=endpoint,
            )
        if not outcome.ok:
            body = outcome.response.text[:500] if outcome.response is not None else ""
            message = outcome.error or f"{operation} failed"
            if outcome.status_code is not None:
                message = f"{operation} failed with HTTP {outcome.status_code} ({endpoint})"
                if body:
                    message = f"{message}: {body}"
            raise HostApiError(message, status_code=outcome.status_code, endpoint=endpoint, body=body)
        if outcome.response is None or not outcome.response.content:
            return None
        try:
            return outcome.response.json()
        except ValueError as exc:
            raise HostApiError(f"{operation} returned a non-JSON body ({endpoint})", endpoint=endpoint) from exc

    def _list(self, payload: Any) -> list[dict[str, Any]]:
        if isinstance(payload, dict) and isinstance(payload.get("records"), list):
            payload = payload["records"]
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    def get_schema(self, kind: str) -> list[ComponentDefinition]:
        payload = self._call("GET", f"/{kind}/schema", f"get {kind} schema")
        return [ComponentDefinition.from_payload(kind, item) for item in self._list(payload)]

    def list_components(self, kind: str) -> list[ComponentDefinition]:
        payload = self._call("GET", f"/{kind}", f"list {kind}")
        return [ComponentDefinition.from_payload(kind, item) for item in self._list(payload)]

    def get_component(self, kind: str, component_id: int) -> ComponentDefinition:
        payload = self._call("GET", f"/{kind}/{component_id}", f"get {kind}")
        return ComponentDefinition.from_payload(kind, payload if isinstance(payload, dict) else {})

    def create_component(self, kind: str, body: dict[str, Any]) -> ComponentDefinition:
        payload = self._call("POST", f"/{kind}", f"create {kind}", json=body, params={"forceSave": "true"})
        return ComponentDefinition.from_payload(kind, payload if isinstance(payload, dict) else {})

    def update_component(self, kind: str, component_id: int, body: dict[str, Any]) -> ComponentDefinition:
        payload = self._call("PUT", f"/{kind}/{component_id}", f"update {kind}", json=body)
        return ComponentDefinition.from_payload(kind, payload if isinstance(payload, dict) else {})

    def delete_component(self, kind: str, component_id: int) -> None:
        self._call("DELETE", f"/{kind}/{component_id}", f"delete {kind}")

    def test_component(self, kind: str, body: dict[str, Any]) -> Any:
        if kind not in TESTABLE_KINDS:
            raise ValueError(f"{kind} has no test endpoint")
        return self._call("POST", f"/{kind}/test", f"test {kind}", json=body)

    def list_releases(self, album_id: int) -> list[dict[str, Any]]:
        payload = self._call("GET", "/release", "list releases", params={"albumId": album_id})
        return self._list(payload)

    def grab_release(self, body: dict[str, Any]) -> Any:
        return self._call("POST", "/release", "grab release", json=body)

    def get_queue(self) -> list[dict[str, Any]]:
        return self._list(self._call("GET", "/queue", "get queue", params={"pageSize": 200}))

    def get_history(self) -> list[dict[str, Any]]:
        return self._list(self._call("GET", "/history", "get history", params={"pageSize": 200}))

    def post_command(self, name: str, **body: Any) -> dict[str, Any]:
        payload = self._call("POST", "/command", f"command {name}", json={"name": name, **body})
        return payload if isinstance(payload, dict) else {}

    def get_command(self, command_id: int) -> dict[str, Any]:
        payload = self._call("GET", f"/command/{command_id}", "get command")
        return payload if isinstance(payload, dict) else {}

    def system_status(self) -> dict[str, Any]:
        payload = self._call("GET", "/system/status", "system status")
        return payload if isinstance(payload, dict) else {}


def poll_until(
    probe: Callable[[], Any],
    *,
    timeout_seconds: float,
    interval_seconds: float,
    endpoint: str,
    operation: str,
    phase: str,
    timeout_type: str = "command_poll",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """Call ``probe`` until it returns something truthy or the deadline passes."""
    deadline = clock() + timeout_seconds
    while True:
        value = probe()
        if value:
            return value
        if clock() >= deadline:
            raise PollTimeout(
                f"{operation} did not complete within {timeout_seconds}s ({phase})",
                endpoint=endpoint,
                timeout_seconds=timeout_seconds,
                operation=operation,
                phase=phase,
                timeout_type=timeout_type,
            )
        sleep(interval_seconds)
