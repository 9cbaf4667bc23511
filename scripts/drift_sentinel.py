#!/usr/bin/env python3
"""Detect when canned provider fixtures drift from live provider responses.

Each provider gets two probes. The error probe sends a deliberately invalid
request and needs no credentials; the success probe is authenticated and is
skipped when its credentials are not in the environment. Drift is reported,
and the caller decides whether it is fatal.
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import httpx

from e2e_common import dig, read_json, utc_now_iso, write_json
from e2e_logging import configure_logging
from rate_limited_client import (
    OUTCOME_INCONCLUSIVE,
    RateLimitedClient,
    RateLimiterState,
)
from redaction import REDACTED, endpoint_for_diagnostics, redact

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_POLICY_FAIL = 2
EXIT_TOOL_ERROR = 3

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONTRACTS_PATH = REPO_ROOT / "data/config/drift_contracts.v1.json"

MODE_ERROR = "error"
MODE_SUCCESS = "success"

PROBE_OK = "ok"
PROBE_DRIFT = "drift"
PROBE_SKIPPED = "skipped"
PROBE_INCONCLUSIVE = "inconclusive"
PROBE_ERROR = "error"

_PLACEHOLDER = re.compile(r"\{([A-Z][A-Z0-9_]*)\}")


@dataclass
class DriftProbeResult:
    provider: str
    mode: str
    status: str
    diagnosis: str
    missing_fields: list[str] = field(default_factory=list)
    status_code: int | None = None
    endpoint: str = ""

    @property
    def drift_detected(self) -> bool:
        return self.status == PROBE_DRIFT

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "mode": self.mode,
            "status": self.status,
            "driftDetected": self.drift_detected,
            "missingFields": list(self.missing_fields),
            "diagnosis": redact(self.diagnosis),
            "statusCode": self.status_code,
            "endpoint": self.endpoint,
        }


def _fill(template: str, environ: Mapping[str, str], secrets: list[str]) -> str:
    def replace(match: re.Match[str]) -> str:
        value = environ.get(match.group(1), "")
        if value:
            secrets.append(value)
        return value

    return _PLACEHOLDER.sub(replace, template)


def _scrub(text: str, secrets: list[str]) -> str:
    for secret in sorted(set(secrets), key=len, reverse=True):
        if secret:
            text = text.replace(secret, REDACTED)
    return redact(text)


def missing_paths(payload: Any, paths: list[str]) -> list[str]:
    return [path for path in paths if not dig(payload, path)[0]]


def missing_at_least_one(items: list[Any], paths: list[str]) -> list[str]:
    """Fields absent on every item; presence on any single item satisfies the contract."""
    out: list[str] = []
    for path in paths:
        present = False
        for item in items:
            found, value = dig(item, path)
            if found and value is not None:
                present = True
                break
        if not present:
            out.append(path)
    return out


class ProviderProbe:
    def __init__(
        self,
        contract: dict[str, Any],
        http_client: httpx.Client,
        *,
        environ: Mapping[str, str] | None = None,
        max_retries: int = 2,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.contract = contract
        self.name = str(contract.get("name", "unknown"))
        self.environ = os.environ if environ is None else environ
        # one limiter per provider; probes for different providers never share backoff state
        kwargs: dict[str, Any] = {"max_retries": max_retries}
        if sleep is not None:
            kwargs["sleep"] = sleep
        self.client = RateLimitedClient(http_client, RateLimiterState(), **kwargs)

    def _send(self, probe: dict[str, Any], *, expect_failure: bool) -> tuple[Any, list[str], str]:
        secrets: list[str] = []
        url = _fill(str(probe.get("url", "")), self.environ, secrets)
        headers = {
            str(key): _fill(str(value), self.environ, secrets)
            for key, value in (probe.get("headers") or {}).items()
        }
        endpoint = _scrub(endpoint_for_diagnostics(url), secrets)
        outcome = self.client.request(
            str(probe.get("method", "GET")).upper(),
            url,
            headers=headers,
            expect_failure=expect_failure,
        )
        return outcome, secrets, endpoint

    def run_error_probe(self) -> DriftProbeResult:
        probe = self.contract.get("errorProbe")
        if not isinstance(probe, dict):
            return DriftProbeResult(self.name, MODE_ERROR, PROBE_SKIPPED, "no error probe configured")
        outcome, secrets, endpoint = self._send(probe, expect_failure=True)
        base = {"provider": self.name, "mode": MODE_ERROR, "status_code": outcome.status_code, "endpoint": endpoint}
        if outcome.status == OUTCOME_INCONCLUSIVE:
            return DriftProbeResult(status=PROBE_INCONCLUSIVE, diagnosis="rate limited; no verdict", **base)
        if outcome.response is None:
            return DriftProbeResult(
                status=PROBE_ERROR,
                diagnosis=_scrub(outcome.error or "no response", secrets),
                **base,
            )
        code = outcome.status_code or 0
        if code >= 500:
            return DriftProbeResult(status=PROBE_ERROR, diagnosis=f"provider unavailable (HTTP {code})", **base)
        if 200 <= code < 300:
            return DriftProbeResult(
                status=PROBE_DRIFT,
                diagnosis=f"invalid request was accepted (HTTP {code}); error contract no longer holds",
                **base,
            )
        body = outcome.json()
        if body is None:
            return DriftProbeResult(
                status=PROBE_DRIFT,
                diagnosis=f"error response (HTTP {code}) is no longer JSON",
                **base,
            )
        expected = [str(item) for item in probe.get("expectedErrorFields", [])]
        missing = missing_paths(body, expected)
        if missing:
            return DriftProbeResult(
                status=PROBE_DRIFT,
                diagnosis=f"error response is missing expected fields: {', '.join(missing)}",
                missing_fields=missing,
                **base,
            )
        return DriftProbeResult(status=PROBE_OK, diagnosis="error contract holds", **base)

    def run_success_probe(self) -> DriftProbeResult:
        probe = self.contract.get("successProbe")
        if not isinstance(probe, dict):
            return DriftProbeResult(self.name, MODE_SUCCESS, PROBE_SKIPPED, "no success probe configured")
        required_env = [str(item) for item in self.contract.get("credentialEnv", [])]
        absent = [name for name in required_env if not self.environ.get(name)]
        if absent:
            return DriftProbeResult(
                self.name,
                MODE_SUCCESS,
                PROBE_SKIPPED,
                f"credentials not configured: {', '.join(absent)}",
            )

        outcome, secrets, endpoint = self._send(probe, expect_failure=False)
        base = {"provider": self.name, "mode": MODE_SUCCESS, "status_code": outcome.status_code, "endpoint": endpoint}
        if outcome.status == OUTCOME_INCONCLUSIVE:
            return DriftProbeResult(status=PROBE_INCONCLUSIVE, diagnosis="rate limited; no verdict", **base)
        if outcome.status_code in (401, 403):
            return DriftProbeResult(
                status=PROBE_SKIPPED,
                diagnosis=f"credentials rejected (HTTP {outcome.status_code})",
                **base,
            )
        if not outcome.ok:
            return DriftProbeResult(
                status=PROBE_ERROR,
                diagnosis=_scrub(outcome.error or "request failed", secrets),
                **base,
            )
        body = outcome.json()
        if body is None:
            return DriftProbeResult(status=PROBE_DRIFT, diagnosis="success response is no longer JSON", **base)

        problems: list[str] = []
        missing_required = missing_paths(body, [str(item) for item in probe.get("required", [])])
        if missing_required:
            problems.append(f"required fields missing: {', '.join(missing_required)}")

        at_least_one = [str(item) for item in probe.get("atLeastOne", [])]
        missing_any: list[str] = []
        items: list[Any] = []
        if at_least_one:
            found, collection = dig(body, str(probe.get("itemsPath", "")))
            items = collection if found and isinstance(collection, list) else []
            if items:
                missing_any = missing_at_least_one(items, at_least_one)
                if missing_any:
                    problems.append(
                        f"fields absent on all {len(items)} items: {', '.join(missing_any)}"
                    )

        if problems:
            return DriftProbeResult(
                status=PROBE_DRIFT,
                diagnosis="; ".join(problems),
                missing_fields=missing_required + missing_any,
                **base,
            )
        if at_least_one and not items:
            return DriftProbeResult(
                status=PROBE_INCONCLUSIVE,
                diagnosis="result collection is empty; at-least-one fields cannot be checked",
                **base,
            )
        return DriftProbeResult(status=PROBE_OK, diagnosis="success contract holds", **base)

    def run(self) -> list[DriftProbeResult]:
        return [self.run_error_probe(), self.run_success_probe()]


def run_drift_sentinel(
    contracts: dict[str, Any],
    *,
    http_client: httpx.Client | None = None,
    environ: Mapping[str, str] | None = None,
    strict: bool = False,
    max_workers: int = 1,
    sleep: Callable[[float], None] | None = None,
) -> dict[str, Any]:
    providers = [item for item in contracts.get("providers", []) if isinstance(item, dict)]
    owns_client = http_client is None
    client = http_client or httpx.Client(timeout=15.0, follow_redirects=True)
    try:
        probes = [ProviderProbe(contract, client, environ=environ, sleep=sleep) for contract in providers]
        if max_workers > 1 and len(probes) > 1:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                batches = list(pool.map(lambda probe: probe.run(), probes))
        else:
            batches = [probe.run() for probe in probes]
    finally:
        if owns_client:
            client.close()

    results = [result for batch in batches for result in batch]
    drifted = [result for result in results if result.drift_detected]
    for result in drifted:
        logger.warning("drift: %s %s probe: %s", result.provider, result.mode, redact(result.diagnosis))
    diagnosis = (
        "; ".join(f"{result.provider}/{result.mode}: {result.diagnosis}" for result in drifted)
        if drifted
        else "no drift detected"
    )
    return {
        "version": "v1",
        "executed": True,
        "generatedAt": utc_now_iso(),
        "contractsVersion": contracts.get("version"),
        "strict": strict,
        "driftDetected": bool(drifted),
        "diagnosis": redact(diagnosis),
        "probes": [result.to_dict() for result in results],
    }


def drift_exit_code(report: dict[str, Any]) -> int:
    if report.get("driftDetected") and report.get("strict"):
        return EXIT_POLICY_FAIL
    return EXIT_OK


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Probe live providers and report drift from the canned fixture contracts."
    )
    parser.add_argument("--contracts", default=str(DEFAULT_CONTRACTS_PATH))
    parser.add_argument("--output", default=None, help="Optional path for the JSON drift report.")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit 2 when drift is detected (default: warn only).",
    )
    parser.add_argument("--max-workers", type=int, default=1)
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    configure_logging(args.log_level)
    try:
        contracts = read_json(Path(args.contracts))
    except (OSError, ValueError) as exc:
        logger.error("cannot read drift contracts: %s", exc)
        return EXIT_TOOL_ERROR

    report = run_drift_sentinel(contracts, strict=args.strict, max_workers=max(args.max_workers, 1))
    if args.output:
        write_json(Path(args.output), report)
    print(
        json.dumps(
            {"driftDetected": report["driftDetected"], "diagnosis": report["diagnosis"]},
            ensure_ascii=False,
        )
    )
    return drift_exit_code(report)


if __name__ == "__main__":
    sys.exit(main())
