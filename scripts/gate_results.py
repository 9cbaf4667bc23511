#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from e2e_common import utc_now_iso
from error_classifier import E2E_API_TIMEOUT
from redaction import endpoint_for_diagnostics, redact, redact_object

OUTCOME_SUCCESS = "success"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOMES = (OUTCOME_SUCCESS, OUTCOME_FAILED, OUTCOME_SKIPPED)

TIMEOUT_HTTP = "http"
TIMEOUT_COMMAND_POLL = "command_poll"
TIMEOUT_QUEUE_POLL = "queue_poll"
TIMEOUT_RESTART_POLL = "restart_poll"
TIMEOUT_PROCESS = "process"
TIMEOUT_GATE = "gate"


def timeout_detail(
    *,
    timeout_type: str,
    timeout_seconds: float,
    endpoint: str,
    operation: str,
    phase: str,
) -> dict[str, Any]:
    # endpoint may arrive as a full URL; only path and query survive
    if "://" in endpoint:
        endpoint = endpoint_for_diagnostics(endpoint)
    return {
        "errorCode": E2E_API_TIMEOUT,
        "timeoutType": timeout_type,
        "timeoutSeconds": timeout_seconds,
        "endpoint": redact(endpoint),
        "operation": operation,
        "phase": phase,
    }


@dataclass(frozen=True)
class GateResult:
    gate: str
    plugin: str
    outcome: str
    errors: tuple[str, ...] = ()
    skip_reason: str | None = None
    error_code: str | None = None
    error_code_source: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    started_at: str = ""
    ended_at: str = ""

    def __post_init__(self) -> None:
        if self.outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome: {self.outcome}")
        if self.outcome == OUTCOME_SKIPPED and (self.errors or not self.skip_reason):
            raise ValueError("a skipped gate carries a skip reason and no errors")
        if self.outcome == OUTCOME_FAILED and not self.errors and not self.error_code:
            raise ValueError("a failed gate carries errors or an error code")
        # every string leaving a gate is scrubbed once, here
        object.__setattr__(self, "errors", tuple(redact(str(item)) for item in self.errors))
        object.__setattr__(self, "skip_reason", redact(self.skip_reason) if self.skip_reason else None)
        object.__setattr__(self, "details", redact_object(dict(self.details)))

    @property
    def passed(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "gate": self.gate,
            "plugin": self.plugin,
            "outcome": self.outcome,
            "errors": list(self.errors),
            "skipReason": self.skip_reason,
            "errorCode": self.error_code,
            "errorCodeSource": self.error_code_source,
            "details": self.details,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
        }


def success(gate: str, plugin: str, details: dict[str, Any] | None = None, started_at: str = "") -> GateResult:
    return GateResult(
        gate=gate,
        plugin=plugin,
        outcome=OUTCOME_SUCCESS,
        details=details or {},
        started_at=started_at,
        ended_at=utc_now_iso(),
    )


def failed(
    gate: str,
    plugin: str,
    errors: list[str],
    *,
    error_code: str | None = None,
    error_code_source: str | None = None,
    details: dict[str, Any] | None = None,
    started_at: str = "",
) -> GateResult:
    return GateResult(
        gate=gate,
        plugin=plugin,
        outcome=OUTCOME_FAILED,
        errors=tuple(errors),
        error_code=error_code,
        error_code_source=error_code_source,
        details=details or {},
        started_at=started_at,
        ended_at=utc_now_iso(),
    )


def skipped(
    gate: str,
    plugin: str,
    reason: str,
    *,
    error_code: str | None = None,
    error_code_source: str | None = None,
    details: dict[str, Any] | None = None,
    started_at: str = "",
) -> GateResult:
    now = utc_now_iso()
    return GateResult(
        gate=gate,
        plugin=plugin,
        outcome=OUTCOME_SKIPPED,
        skip_reason=reason,
        error_code=error_code,
        error_code_source=error_code_source,
        details=details or {},
        started_at=started_at or now,
        ended_at=now,
    )


def result_from_dict(payload: dict[str, Any]) -> GateResult:
    return GateResult(
        gate=str(payload.get("gate", "")),
        plugin=str(payload.get("plugin", "")),
        outcome=str(payload.get("outcome", "")),
        errors=tuple(str(item) for item in payload.get("errors") or []),
        skip_reason=payload.get("skipReason"),
        error_code=payload.get("errorCode"),
        error_code_source=payload.get("errorCodeSource"),
        details=payload.get("details") or {},
        started_at=str(payload.get("startedAt", "")),
        ended_at=str(payload.get("endedAt", "")),
    )
