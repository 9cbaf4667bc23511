#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

import httpx

from drift_sentinel import run_drift_sentinel
from e2e_common import new_run_id, read_json, utc_now_iso
from e2e_config import DEFAULT_CONFIG_PATH, GATE_ORDER, REPO_ROOT, ConfigError, E2EConfig, load_config
from e2e_logging import configure_logging
from gate_results import OUTCOME_FAILED, GateResult
from gates import GateController
from host_api import HostApi
from process_executor import ContainerRuntime
from run_manifest import build_manifest, validate_manifest, write_manifest

EXIT_OK = 0
EXIT_POLICY_FAIL = 2
EXIT_TOOL_ERROR = 3

DEFAULT_OUTPUT_ROOT = "data/runtime/e2e"
HOST_LOG_TAIL_LINES = 300

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the plugin E2E gates against a live host.")
    parser.add_argument("--config", default=str(DEFAULT_CONFIG_PATH))
    parser.add_argument(
        "--output-root",
        default=DEFAULT_OUTPUT_ROOT,
        help="Directory that receives <run-id>/run-manifest.json.",
    )
    parser.add_argument("--run-id", default=None)
    parser.add_argument(
        "--gates",
        default=None,
        help=f"Comma-separated subset of gates to run ({','.join(GATE_ORDER)}).",
    )
    parser.add_argument("--skip-drift", action="store_true", help="Do not run the drift sentinel.")
    parser.add_argument(
        "--strict-drift",
        action="store_true",
        help="Treat detected provider drift as a policy failure.",
    )
    parser.add_argument("--log-level", default="INFO")
    return parser.parse_args(argv)


def _resolve(path_value: str) -> Path:
    path = Path(path_value)
    return path if path.is_absolute() else (REPO_ROOT / path).resolve()


def parse_gate_list(raw: str | None) -> list[str] | None:
    if raw is None or not raw.strip():
        return None
    wanted = [item.strip() for item in raw.split(",") if item.strip()]
    by_lower = {gate.lower(): gate for gate in GATE_ORDER}
    unknown = [item for item in wanted if item.lower() not in by_lower]
    if unknown:
        raise ConfigError(f"unknown gates requested: {', '.join(unknown)}")
    return [by_lower[item.lower()] for item in wanted]


def host_log_lines(runtime: ContainerRuntime | None, container: str | None) -> list[str]:
    if runtime is None or not container:
        return []
    proc = runtime.logs(container, tail_lines=HOST_LOG_TAIL_LINES)
    if not proc.ok:
        logger.warning("could not read host logs: %s", proc.remediation)
        return []
    return [line for line in proc.stdout.splitlines() if line.strip()]


def run_drift(
    config: E2EConfig,
    *,
    strict: bool,
    http_client: httpx.Client | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, Any]:
    contracts_path = _resolve(config.drift.contracts_path)
    try:
        contracts = read_json(contracts_path)
    except (OSError, ValueError) as exc:
        logger.error("drift sentinel skipped: cannot read contracts %s: %s", contracts_path, exc)
        return {"executed": False, "diagnosis": f"contracts unreadable: {contracts_path.name}"}
    return run_drift_sentinel(contracts, http_client=http_client, environ=environ, strict=strict)


def run_e2e(
    config: E2EConfig,
    *,
    run_id: str,
    output_root: Path,
    api: HostApi,
    runtime: ContainerRuntime | None = None,
    gates: list[str] | None = None,
    drift_enabled: bool = True,
    strict_drift: bool = False,
    drift_runner: Callable[..., dict[str, Any]] = run_drift,
    sleep: Callable[[float], None] | None = None,
) -> tuple[dict[str, Any], list[str], Path]:
    """Run the gates, the optional drift probes, and write the manifest.

    Returns the manifest, its validation errors and the path it was written to.
    """
    started_at = utc_now_iso()
    controller_kwargs: dict[str, Any] = {}
    if sleep is not None:
        controller_kwargs["sleep"] = sleep
    controller = GateController(config, api, runtime, **controller_kwargs)
    results: list[GateResult] = controller.run(gates)

    drift = None
    if drift_enabled:
        drift = drift_runner(config, strict=strict_drift)

    extra_texts: list[str] = []
    if any(result.outcome == OUTCOME_FAILED for result in results):
        extra_texts = host_log_lines(runtime, config.host.container)

    context = {
        "plugin": config.plugin.name,
        "startedAt": started_at,
        "endedAt": utc_now_iso(),
        "sources": config.sources,
        "request": {
            "gates": gates if gates is not None else list(config.gates.enabled),
            "driftEnabled": drift_enabled,
            "strictDrift": strict_drift,
        },
        "effective": config.effective(),
    }
    manifest = build_manifest(results, run_id, context, drift=drift, extra_texts=extra_texts)
    errors = validate_manifest(manifest)
    for error in errors:
        logger.error("manifest invalid: %s", error)
    path = write_manifest(output_root / run_id, manifest)
    return manifest, errors, path


def exit_code_for(manifest: dict[str, Any], manifest_errors: list[str]) -> int:
    if manifest_errors:
        return EXIT_POLICY_FAIL
    if not manifest.get("summary", {}).get("overallSuccess", False):
        return EXIT_POLICY_FAIL
    drift = manifest.get("drift") or {}
    if drift.get("driftDetected") and drift.get("strict"):
        return EXIT_POLICY_FAIL
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(_resolve(args.config))
        gates = parse_gate_list(args.gates)
    except ConfigError as exc:
        logger.error("%s", exc)
        print(json.dumps({"status": "tool_error", "error": str(exc)}, ensure_ascii=False))
        return EXIT_TOOL_ERROR

    for name in config.sources.get("unresolvedEnvRefs", []):
        logger.warning("config references unset environment variable %s", name)

    run_id = args.run_id.strip() if isinstance(args.run_id, str) and args.run_id.strip() else new_run_id()
    output_root = _resolve(args.output_root)
    runtime = ContainerRuntime(config.host.container_cli) if config.host.container else None
    strict_drift = args.strict_drift or config.drift.strict

    try:
        with HostApi(
            config.host.url,
            config.host.api_key,
            timeout_seconds=config.host.request_timeout_seconds,
            max_retries=config.host.max_retries,
        ) as api:
            manifest, errors, path = run_e2e(
                config,
                run_id=run_id,
                output_root=output_root,
                api=api,
                runtime=runtime,
                gates=gates,
                drift_enabled=config.drift.enabled and not args.skip_drift,
                strict_drift=strict_drift,
            )
    except Exception as exc:  # noqa: BLE001
        logger.exception("e2e run crashed before the manifest was written")
        print(json.dumps({"status": "tool_error", "runId": run_id, "error": type(exc).__name__}, ensure_ascii=False))
        return EXIT_TOOL_ERROR

    exit_code = exit_code_for(manifest, errors)
    print(
        json.dumps(
            {
                "runId": run_id,
                "manifest": str(path),
                "summary": manifest["summary"],
                "driftDetected": bool((manifest.get("drift") or {}).get("driftDetected")),
                "hostBugSuspected": manifest["hostBugSuspected"]["detected"],
                "manifestValid": not errors,
                "exitCode": exit_code,
            },
            ensure_ascii=False,
        )
    )
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
