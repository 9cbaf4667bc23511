#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Iterable

from e2e_common import read_json, schema_errors, utc_now_iso, write_json
from error_classifier import PATTERN_TABLE_VERSION, classify_host_bug
from gate_results import OUTCOME_FAILED, OUTCOME_SKIPPED, OUTCOME_SUCCESS, GateResult
from redaction import redact_object, run_self_test, strip_sensitive_fields

EXIT_OK = 0
EXIT_POLICY_FAIL = 2
EXIT_TOOL_ERROR = 3

SCHEMA_VERSION = "1.0"
SCHEMA_RELATIVE_PATH = "docs/schemas/e2e_run_manifest.schema.v1.json"
REPO_ROOT = Path(__file__).resolve().parents[1]
SCHEMA_PATH = REPO_ROOT / SCHEMA_RELATIVE_PATH
# absolute location of the schema that shipped with this checkout
SCHEMA_URL = SCHEMA_PATH.as_uri()

MANIFEST_FILENAME = "run-manifest.json"


def summarize(results: list[dict[str, Any]]) -> dict[str, Any]:
    passed = sum(1 for item in results if item.get("outcome") == OUTCOME_SUCCESS)
    failed = sum(1 for item in results if item.get("outcome") == OUTCOME_FAILED)
    skipped = sum(1 for item in results if item.get("outcome") == OUTCOME_SKIPPED)
    return {
        "total": len(results),
        "passed": passed,
        "failed": failed,
        "skipped": skipped,
        "overallSuccess": failed == 0,
    }


def _error_texts(results: list[dict[str, Any]]) -> tuple[list[str], list[str | None]]:
    texts: list[str] = []
    gates: list[str | None] = []
    for item in results:
        for error in item.get("errors") or []:
            texts.append(str(error))
            gates.append(item.get("gate"))
        if item.get("errorCode"):
            texts.append(str(item["errorCode"]))
            gates.append(item.get("gate"))
    return texts, gates


def build_manifest(
    results: Iterable[GateResult | dict[str, Any]],
    run_id: str,
    context: dict[str, Any] | None = None,
    drift: dict[str, Any] | None = None,
    extra_texts: list[str] | None = None,
) -> dict[str, Any]:
    """Assemble the versioned run manifest.

    Sensitive keys are dropped outright and every remaining string is redacted.
    ``extra_texts`` (e.g. host log lines) only feed the host-defect scan.
    """
    ctx = context or {}
    result_dicts = [item.to_dict() if isinstance(item, GateResult) else dict(item) for item in results]

    texts, gates = _error_texts(result_dicts)
    for line in extra_texts or []:
        texts.append(line)
        gates.append(None)

    manifest = {
        "schemaVersion": SCHEMA_VERSION,
        "schemaUrl": SCHEMA_URL,
        "schemaPath": SCHEMA_RELATIVE_PATH,
        "runId": run_id,
        "generatedAt": utc_now_iso(),
        "startedAt": ctx.get("startedAt"),
        "endedAt": ctx.get("endedAt") or utc_now_iso(),
        "plugin": ctx.get("plugin"),
        "results": result_dicts,
        "summary": summarize(result_dicts),
        "hostBugSuspected": classify_host_bug(texts, gates),
        "sources": ctx.get("sources") or {},
        "request": ctx.get("request") or {},
        "effective": ctx.get("effective") or {},
        "redaction": run_self_test(),
        "errorClassifier": {"patternTableVersion": PATTERN_TABLE_VERSION},
        "drift": drift if drift is not None else {"executed": False},
    }
    return redact_object(strip_sensitive_fields(manifest))


def validate_manifest(manifest: dict[str, Any], schema: dict[str, Any] | None = None) -> list[str]:
    if schema is None:
        schema = read_json(SCHEMA_PATH)
    errors = schema_errors(manifest, schema)
    results = manifest.get("results")
    summary = manifest.get("summary")
    if isinstance(results, list) and isinstance(summary, dict):
        counted = sum(int(summary.get(key, 0) or 0) for key in ("passed", "failed", "skipped"))
        if counted != len(results):
            errors.append(f"summary: passed+failed+skipped={counted} but results has {len(results)} entries")
        if summary.get("total") != len(results):
            errors.append(f"summary: total={summary.get('total')} but results has {len(results)} entries")
        any_failed = any(isinstance(item, dict) and item.get("outcome") == OUTCOME_FAILED for item in results)
        if summary.get("overallSuccess") is any_failed:
            errors.append("summary: overallSuccess must be false exactly when a gate failed")
        for index, item in enumerate(results):
            if not isinstance(item, dict):
                continue
            if item.get("outcome") == OUTCOME_SKIPPED and (item.get("errors") or not item.get("skipReason")):
                errors.append(f"results.{index}: skipped result needs a skipReason and no errors")
            if item.get("outcome") == OUTCOME_FAILED and not item.get("errors") and not item.get("errorCode"):
                errors.append(f"results.{index}: failed result needs errors or an errorCode")
    return errors


def write_manifest(run_dir: Path, manifest: dict[str, Any]) -> Path:
    path = run_dir / MANIFEST_FILENAME
    write_json(path, manifest)
    return path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate an E2E run manifest.")
    parser.add_argument("--manifest", required=True)
    parser.add_argument("--schema", default=str(SCHEMA_PATH))
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    try:
        manifest = read_json(Path(args.manifest))
        schema = read_json(Path(args.schema))
    except (OSError, ValueError) as exc:
        print(json.dumps({"valid": False, "errors": [f"tool_error: {exc}"]}, ensure_ascii=False))
        return EXIT_TOOL_ERROR

    errors = validate_manifest(manifest, schema)
    print(json.dumps({"valid": not errors, "errors": errors}, ensure_ascii=False))
    return EXIT_OK if not errors else EXIT_POLICY_FAIL


if __name__ == "__main__":
    sys.exit(main())
