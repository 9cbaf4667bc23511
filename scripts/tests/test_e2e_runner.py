#!/usr/bin/env python3
from __future__ import annotations

import json
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
SCRIPTS_DIR = REPO_ROOT / "scripts"
TESTS_DIR = Path(__file__).resolve().parent
for path in (SCRIPTS_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from e2e_config import ConfigError  # noqa: E402
from e2e_common import read_json  # noqa: E402
from e2e_runner import EXIT_OK, EXIT_POLICY_FAIL, exit_code_for, parse_gate_list, run_e2e  # noqa: E402
from fake_host import API_KEY, FakeHost, FakeRuntime, make_config  # noqa: E402


def no_drift(config, *, strict):
    return {"executed": True, "strict": strict, "driftDetected": False, "diagnosis": "no drift detected", "probes": []}


def drifting(config, *, strict):
    return {"executed": True, "strict": strict, "driftDetected": True, "diagnosis": "catalog/success: hires", "probes": []}


class TestE2ERunner(unittest.TestCase):
    def setUp(self) -> None:
        self.host = FakeHost()
        self.runtime = FakeRuntime()
        self._tmp = tempfile.TemporaryDirectory(prefix="e2e-runner-")
        self.output_root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def run_gates(self, gates, config=None, **kwargs):
        return run_e2e(
            config or make_config(),
            run_id="run_test",
            output_root=self.output_root,
            api=self.host.api(),
            runtime=self.runtime,
            gates=gates,
            sleep=lambda _: None,
            **kwargs,
        )

    def test_successful_run_writes_valid_manifest(self) -> None:
        manifest, errors, path = self.run_gates(["Schema", "Search", "AuthFailure"], drift_runner=no_drift)
        self.assertEqual([], errors)
        self.assertEqual(self.output_root / "run_test" / "run-manifest.json", path)
        self.assertEqual(manifest, read_json(path))
        self.assertEqual(["Schema", "Search", "AuthFailure"], [item["gate"] for item in manifest["results"]])
        self.assertTrue(manifest["summary"]["overallSuccess"])
        self.assertEqual("Qobuzarr", manifest["plugin"])
        self.assertEqual(["Schema", "Search", "AuthFailure"], manifest["request"]["gates"])
        self.assertTrue(manifest["drift"]["executed"])
        self.assertEqual(EXIT_OK, exit_code_for(manifest, errors))
        self.assertNotIn(API_KEY, path.read_text(encoding="utf-8"))
        self.assertNotIn("hunter2-not-real", path.read_text(encoding="utf-8"))

    def test_failed_gate_collects_host_logs_for_bug_scan(self) -> None:
        self.host.test_status = 500
        self.runtime.log_text = "[Error] System.MissingMethodException: Method not found\n"
        manifest, errors, _ = self.run_gates(["Schema", "Search"], drift_enabled=False)
        self.assertEqual([], errors)
        self.assertEqual(1, manifest["summary"]["failed"])
        self.assertEqual("ABI_MISMATCH", manifest["hostBugSuspected"]["classification"])
        self.assertIn(("logs", "lidarr-e2e"), self.runtime.calls)
        self.assertEqual({"executed": False}, manifest["drift"])
        self.assertEqual(EXIT_POLICY_FAIL, exit_code_for(manifest, errors))

    def test_strict_drift_fails_the_run(self) -> None:
        manifest, errors, _ = self.run_gates(["Schema"], strict_drift=True, drift_runner=drifting)
        self.assertTrue(manifest["summary"]["overallSuccess"])
        self.assertEqual(EXIT_POLICY_FAIL, exit_code_for(manifest, errors))

    def test_warn_only_drift_does_not_fail(self) -> None:
        manifest, errors, _ = self.run_gates(["Schema"], drift_runner=drifting)
        self.assertEqual(EXIT_OK, exit_code_for(manifest, errors))

    def test_invalid_manifest_fails(self) -> None:
        self.assertEqual(EXIT_POLICY_FAIL, exit_code_for({"summary": {"overallSuccess": True}}, ["schema:$: broken"]))

    def test_parse_gate_list(self) -> None:
        self.assertIsNone(parse_gate_list(None))
        self.assertIsNone(parse_gate_list(" "))
        self.assertEqual(["Schema", "AuthFailure"], parse_gate_list("schema, AuthFailure"))
        with self.assertRaises(ConfigError):
            parse_gate_list("Schema,Teleport")


class TestE2ERunnerCli(unittest.TestCase):
    def test_unreadable_config_is_tool_error(self) -> None:
        with tempfile.TemporaryDirectory(prefix="e2e-runner-cli-") as tmp:
            proc = subprocess.run(
                [
                    sys.executable,
                    str(SCRIPTS_DIR / "e2e_runner.py"),
                    "--config",
                    str(Path(tmp) / "missing.json"),
                    "--output-root",
                    tmp,
                ],
                cwd=str(REPO_ROOT),
                text=True,
                capture_output=True,
                check=False,
            )
            self.assertEqual(3, proc.returncode)
            self.assertEqual("tool_error", json.loads(proc.stdout)["status"])


if __name__ == "__main__":
    unittest.main()
