#!/usr/bin/env python3
from __future__ import annotations

import json
import socket
import time
import unittest
from pathlib import Path

import sys

import httpx

REPO_ROOT = Path(__file__).resolve().parents[2]
SCRIPTS_DIR = REPO_ROOT / "scripts"
TESTS_DIR = Path(__file__).resolve().parent
for path in (SCRIPTS_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from fake_host import API_KEY, INDEXER_IMPL, FakeClock, FakeHost, FakeRuntime, make_config  # noqa: E402
from gates import Deadline, GateController, call_with_deadline  # noqa: E402
from process_executor import ProcessResult  # noqa: E402


def _proc(stdout: str = "", exit_code: int = 0, stderr: str = "", timed_out: bool = False) -> ProcessResult:
    return ProcessResult(
        args=["docker", "exec"],
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        failure_kind=None if exit_code == 0 else "unknown",
    )


class GateTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.host = FakeHost()
        self.runtime = FakeRuntime()
        self.clock = FakeClock()

    def controller(self, config=None, runtime=True) -> GateController:
        return GateController(
            config or make_config(),
            self.host.api(),
            self.runtime if runtime else None,
            sleep=self.clock.sleep,
            clock=self.clock,
        )

    def attributed_releases(self, indexer_id: int) -> list[dict]:
        return [
            {"guid": "qobuz-2", "title": "Artist - Album (Hi-Res)", "size": 900, "indexerId": indexer_id, "indexer": "Qobuzarr E2E"},
            {"guid": "qobuz-1", "title": "Artist - Album", "size": 400, "indexerId": indexer_id, "indexer": "Qobuzarr E2E"},
            {"guid": "other-1", "title": "Artist - Album", "size": 100, "indexerId": 99, "indexer": "Other"},
        ]


class TestSchemaGate(GateTestCase):
    def test_creates_missing_components(self) -> None:
        controller = self.controller()
        result = controller.run_gate("Schema")
        self.assertEqual("success", result.outcome, result.errors)
        resolution = result.details["componentResolution"]
        self.assertEqual({"downloadclient", "indexer"}, set(resolution))
        self.assertEqual("created", resolution["indexer"]["matchedOn"])
        self.assertTrue(resolution["indexer"]["safeToPersist"])
        created = self.host.components["indexer"][0]
        self.assertEqual("Qobuzarr E2E", created["name"])
        fields = {item["name"]: item["value"] for item in created["fields"]}
        self.assertEqual("e2e@example.com", fields["email"])
        self.assertIn("/api/v1/indexer", self.host.paths("POST"))

    def test_existing_component_is_reused_by_name(self) -> None:
        self.host.components["indexer"] = [{"id": 5, "name": "qobuzarr e2e", "implementation": "Other", "fields": []}]
        result = self.controller().run_gate("Schema")
        record = result.details["componentResolution"]["indexer"]
        self.assertEqual({"id": 5, "matchedOn": "name", "candidateIds": [5], "safeToPersist": True}, record)

    def test_ambiguous_components_pick_lowest_id_and_flag_persistence(self) -> None:
        duplicate = {"name": "Qobuzarr E2E", "implementation": INDEXER_IMPL, "fields": []}
        self.host.components["indexer"] = [{"id": 7, **duplicate}, {"id": 3, **duplicate}]
        controller = self.controller()
        result = controller.run_gate("Schema")
        self.assertEqual("success", result.outcome)
        record = result.details["componentResolution"]["indexer"]
        self.assertEqual("none", record["matchedOn"])
        self.assertFalse(record["safeToPersist"])
        self.assertEqual([3, 7], record["candidateIds"])
        self.assertEqual(3, controller.state.components["indexer"].id)

    def test_missing_implementation(self) -> None:
        self.host.schemas["indexer"] = []
        result = self.controller(runtime=False).run_gate("Schema")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_SCHEMA_MISSING_IMPLEMENTATION", result.error_code)
        self.assertEqual("explicit", result.error_code_source)

    def test_missing_implementation_with_discovery_disabled_in_host_log(self) -> None:
        self.host.schemas["indexer"] = []
        self.runtime.log_text = "[Info] Bootstrap: starting\n[Warn] PluginService: plugin discovery is disabled\n"
        result = self.controller().run_gate("Schema")
        self.assertEqual("E2E_HOST_PLUGIN_DISCOVERY_DISABLED", result.error_code)
        self.assertEqual("DISCOVERY_DISABLED", result.details["hostLogFinding"]["classification"])

    def test_rate_limited_host_skips_as_inconclusive(self) -> None:
        self.host.script("GET", "/api/v1/downloadclient/schema", httpx.Response(429), httpx.Response(429))
        result = self.controller().run_gate("Schema")
        self.assertEqual("skipped", result.outcome)
        self.assertEqual("E2E_RATE_LIMITED", result.error_code)
        self.assertTrue(result.skip_reason.startswith("inconclusive"))

    def test_unhandled_exception_becomes_internal_error(self) -> None:
        controller = self.controller()

        def explode(kind: str):
            raise RuntimeError(f"unexpected payload for {kind}")

        controller.api.get_schema = explode
        result = controller.run_gate("Schema")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_INTERNAL_ERROR", result.error_code)
        self.assertIn("unexpected payload", result.errors[0])


class TestPrecheckAndPredecessors(GateTestCase):
    def test_missing_credentials_skip_before_any_request(self) -> None:
        config = make_config(environ={"TEST_HOST_API_KEY": API_KEY})
        result = self.controller(config).run_gate("Search")
        self.assertEqual("skipped", result.outcome)
        self.assertEqual("E2E_AUTH_MISSING", result.error_code)
        self.assertEqual("explicit", result.error_code_source)
        self.assertEqual([["email", "password"], ["authToken", "userId"]], result.details["missingFieldGroups"])
        self.assertEqual([], self.host.requests)

    def test_predecessor_not_run(self) -> None:
        result = self.controller().run_gate("AlbumSearch")
        self.assertEqual("skipped", result.outcome)
        self.assertIn("predecessor Schema", result.skip_reason)
        self.assertEqual([], result.errors)

    def test_run_honors_gate_order_and_selection(self) -> None:
        controller = self.controller()
        results = controller.run(["AuthFailure", "Schema"])
        self.assertEqual(["Schema", "AuthFailure"], [item.gate for item in results])


class TestSearchGates(GateTestCase):
    def test_indexer_test_passes(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        result = controller.run_gate("Search")
        self.assertEqual("success", result.outcome)
        self.assertTrue(result.details["testPassed"])

    def test_indexer_rejects_credentials_is_inferred_skip(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.host.test_status = 401
        result = controller.run_gate("Search")
        self.assertEqual("skipped", result.outcome)
        self.assertEqual("E2E_AUTH_MISSING", result.error_code)
        self.assertEqual("inferred", result.error_code_source)
        self.assertTrue(result.details["credentialPrerequisite"])

    def test_provider_outage_is_classified(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.host.test_status = 503
        result = controller.run_gate("Search")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_PROVIDER_UNAVAILABLE", result.error_code)
        self.assertEqual("inferred", result.error_code_source)
        self.assertEqual(503, result.details["statusCode"])

    def test_no_attributed_releases(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.host.releases = [
            {"guid": "a", "title": "A", "indexerId": 99, "indexer": "Other"},
            {"guid": "b", "title": "B", "indexerId": 99, "indexer": "Other"},
            {"guid": "c", "title": "C", "indexerId": 98, "indexer": "Another"},
            {"guid": "d", "title": "D", "indexerId": None},
            {"guid": "e", "title": "E"},
        ]
        with self.assertLogs("gates", level="ERROR"):
            result = controller.run_gate("AlbumSearch")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_NO_RELEASES_ATTRIBUTED", result.error_code)
        self.assertEqual(2, result.details["nullIndexerReleaseCount"])
        self.assertEqual(5, result.details["releaseCount"])
        self.assertEqual(0, result.details["attributedCount"])
        self.assertTrue(result.details["parserRegressionSuspected"])

    def test_album_search_selects_deterministically(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.host.releases = self.attributed_releases(controller.state.components["indexer"].id)
        result = controller.run_gate("AlbumSearch")
        self.assertEqual("success", result.outcome, result.errors)
        self.assertEqual("Artist - Album", result.details["selectedTitle"])
        self.assertEqual(2, result.details["attributedCount"])
        self.assertEqual("title", result.details["selection"]["tieBreaker"])
        self.assertEqual("qobuz-1", controller.state.selected_release["guid"])
        command = next(request for request in self.host.requests if request.url.path == "/api/v1/command")
        self.assertEqual({"name": "AlbumSearch", "albumIds": [42]}, json.loads(command.content))

    def test_stuck_command_times_out_with_detail(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.host.command_status = "started"
        result = controller.run_gate("AlbumSearch")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_API_TIMEOUT", result.error_code)
        timeout = result.details["timeout"]
        self.assertEqual("command_poll", timeout["timeoutType"])
        self.assertEqual(30, timeout["timeoutSeconds"])
        self.assertTrue(timeout["endpoint"].startswith("/api/v1/command/"))
        self.assertEqual("album_search", timeout["phase"])
        self.assertGreaterEqual(self.clock.now, 30)


class TestDownloadGates(GateTestCase):
    def _through_album_search(self, controller: GateController) -> None:
        controller.run_gate("Schema")
        self.host.releases = self.attributed_releases(controller.state.components["indexer"].id)
        self.assertEqual("success", controller.run_gate("AlbumSearch").outcome)

    def test_grab_and_metadata_pass(self) -> None:
        self.runtime.exec_results["find"] = _proc("/downloads/Artist/01 - Intro.flac\n/downloads/Artist/cover.jpg\n")
        self.runtime.exec_results["ffprobe"] = _proc(
            json.dumps({"format": {"tags": {"ARTIST": "Artist", "album": "Album", "title": "Intro"}}})
        )
        controller = self.controller()
        self._through_album_search(controller)
        grab = controller.run_gate("Grab")
        self.assertEqual("success", grab.outcome, grab.errors)
        self.assertEqual(1, grab.details["audioFileCount"])
        self.assertEqual(["/downloads/Artist/01 - Intro.flac"], controller.state.audio_files)
        grab_request = next(
            request for request in self.host.requests if request.method == "POST" and request.url.path == "/api/v1/release"
        )
        self.assertEqual("qobuz-1", json.loads(grab_request.content)["guid"])

        metadata = controller.run_gate("Metadata")
        self.assertEqual("success", metadata.outcome, metadata.errors)
        self.assertEqual([{"file": "01 - Intro.flac", "missingTags": []}], metadata.details["filesChecked"])

    def test_zero_audio_files(self) -> None:
        self.runtime.exec_results["find"] = _proc("/downloads/Artist/cover.jpg\n")
        controller = self.controller()
        self._through_album_search(controller)
        result = controller.run_gate("Grab")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_ZERO_AUDIO_FILES", result.error_code)

    def test_missing_tags(self) -> None:
        self.runtime.exec_results["find"] = _proc("/downloads/a.flac\n")
        self.runtime.exec_results["ffprobe"] = _proc(json.dumps({"format": {"tags": {"artist": "Artist"}}}))
        controller = self.controller()
        self._through_album_search(controller)
        controller.run_gate("Grab")
        result = controller.run_gate("Metadata")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_METADATA_MISSING", result.error_code)
        self.assertIn("album, title", result.errors[0])

    def test_null_format_block_counts_as_missing_tags(self) -> None:
        self.runtime.exec_results["find"] = _proc("/downloads/a.flac\n")
        self.runtime.exec_results["ffprobe"] = _proc(json.dumps({"format": None}))
        controller = self.controller()
        self._through_album_search(controller)
        controller.run_gate("Grab")
        result = controller.run_gate("Metadata")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_METADATA_MISSING", result.error_code)
        self.assertEqual([{"file": "a.flac", "missingTags": ["artist", "album", "title"]}], result.details["filesChecked"])

    def test_container_failure_maps_to_docker_unavailable(self) -> None:
        self.runtime.exec_results["find"] = _proc(exit_code=1, stderr="Error: No such container: lidarr-e2e")
        controller = self.controller()
        self._through_album_search(controller)
        result = controller.run_gate("Grab")
        self.assertEqual("E2E_DOCKER_UNAVAILABLE", result.error_code)
        self.assertIn("process", result.details)

    def test_grab_without_container_is_skipped(self) -> None:
        controller = self.controller(runtime=False)
        self._through_album_search(controller)
        result = controller.run_gate("Grab")
        self.assertEqual("skipped", result.outcome)
        self.assertIn("container not configured", result.skip_reason)
        self.assertNotIn("/api/v1/release", self.host.paths("POST"))

    def test_metadata_skipped_when_grab_did_not_run(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        result = controller.run_gate("Metadata")
        self.assertEqual("skipped", result.outcome)
        self.assertIn("predecessor Grab", result.skip_reason)


class TestImportListAndPersistence(GateTestCase):
    def test_import_list_skipped_without_component(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        result = controller.run_gate("ImportList")
        self.assertEqual("skipped", result.outcome)
        self.assertIn("no import list", result.skip_reason)

    def test_persistence_survives_restart(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.host.history = [{"id": 11, "eventType": "grabbed"}]
        result = controller.run_gate("Persistence")
        self.assertEqual("success", result.outcome, result.errors)
        self.assertIn(("restart", "lidarr-e2e"), self.runtime.calls)
        self.assertEqual(1, result.details["after"]["historyCount"])

    def test_persistence_detects_duplicates_after_restart(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        original = self.host.components["indexer"][0]

        def duplicate_on_restart(container: str, timeout: float = 60) -> ProcessResult:
            self.host.components["indexer"].append({**original, "id": 900})
            return _proc()

        self.runtime.restart = duplicate_on_restart
        result = controller.run_gate("Persistence")
        self.assertEqual("failed", result.outcome)
        self.assertTrue(any("duplicate components" in error for error in result.errors))

    def test_persistence_restart_failure(self) -> None:
        controller = self.controller()
        controller.run_gate("Schema")
        self.runtime.restart_result = _proc(exit_code=1, stderr="Cannot connect to the Docker daemon")
        result = controller.run_gate("Persistence")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_DOCKER_UNAVAILABLE", result.error_code)


class TestAuthFailureGate(GateTestCase):
    def test_rate_limit_mode_accepts_429_with_retry_after(self) -> None:
        self.host.invalid_key_response = (429, {"Retry-After": "60"})
        result = self.controller(make_config(authFailure={"mode": "429"})).run_gate("AuthFailure")
        self.assertEqual("success", result.outcome, result.errors)
        self.assertTrue(result.details["failedAsExpected"])
        self.assertEqual("60", result.details["retryAfter"])
        self.assertEqual(429, result.details["actualStatus"])

    def test_rate_limit_mode_requires_retry_after(self) -> None:
        self.host.invalid_key_response = (429, {})
        result = self.controller(make_config(authFailure={"mode": "429"})).run_gate("AuthFailure")
        self.assertEqual("failed", result.outcome)
        self.assertIn("Retry-After", result.errors[0])

    def test_unauthorized_mode(self) -> None:
        result = self.controller().run_gate("AuthFailure")
        self.assertEqual("success", result.outcome, result.errors)
        self.assertEqual(401, result.details["actualStatus"])
        sent = self.host.requests[-1].headers["X-Api-Key"]
        self.assertEqual("e2e-invalid-api-key", sent)

    def test_accepted_invalid_key_fails(self) -> None:
        self.host.script("GET", "/api/v1/system/status", httpx.Response(200, json={}))
        result = self.controller().run_gate("AuthFailure")
        self.assertEqual("failed", result.outcome)
        self.assertIn("was accepted", result.errors[0])

    def test_wrong_status_is_not_turned_into_credential_skip(self) -> None:
        self.host.invalid_key_response = (403, {})
        result = self.controller().run_gate("AuthFailure")
        self.assertEqual("failed", result.outcome)
        self.assertIn("got HTTP 403", result.errors[0])
        self.assertIsNone(result.error_code)


class TestGateDeadline(GateTestCase):
    def test_call_with_deadline_returns_fast_results(self) -> None:
        self.assertEqual("done", call_with_deadline(lambda: "done", 2))

    def test_call_with_deadline_raises_for_slow_work(self) -> None:
        with self.assertRaises(TimeoutError):
            call_with_deadline(lambda: time.sleep(3), 1)

    def test_gate_overrun_becomes_timeout_failure(self) -> None:
        controller = self.controller(make_config(gates={"timeoutsSeconds": {"Schema": 1}}))
        controller._gate_functions["Schema"] = lambda details: time.sleep(3)
        result = controller.run_gate("Schema")
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_API_TIMEOUT", result.error_code)
        self.assertEqual("gate", result.details["timeout"]["timeoutType"])

    def test_silent_host_after_restart_cannot_outlast_the_gate_deadline(self) -> None:
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(8)
        self.addCleanup(listener.close)
        answer = self.host.handle
        silent: list[bool] = []

        def status_never_answers(request: httpx.Request) -> httpx.Response:
            if silent and request.url.path == "/api/v1/system/status":
                # the kernel accepts the connection; nobody ever writes a byte back
                conn = socket.create_connection(listener.getsockname(), timeout=30)
                try:
                    conn.recv(1)
                except TimeoutError as exc:
                    raise httpx.ReadTimeout(str(exc), request=request) from exc
                finally:
                    conn.close()
            return answer(request)

        self.host.handle = status_never_answers
        controller = self.controller(
            make_config(gates={"timeoutsSeconds": {"Persistence": 1}}, persistence={"restartTimeoutSeconds": 600})
        )
        self.assertEqual("success", controller.run_gate("Schema").outcome)
        silent.append(True)

        started = time.monotonic()
        result = controller.run_gate("Persistence")
        self.assertLess(time.monotonic() - started, 10)
        self.assertEqual("failed", result.outcome)
        self.assertEqual("E2E_API_TIMEOUT", result.error_code)
        self.assertEqual("gate", result.details["timeout"]["timeoutType"])
        self.assertEqual(1, result.details["timeout"]["timeoutSeconds"])

    def test_deadline_overrides_errors_raised_after_it_fires(self) -> None:
        def swallow_then_fail() -> None:
            try:
                time.sleep(3)
            except TimeoutError:
                pass
            raise ValueError("later failure")

        deadline = Deadline(1)
        with self.assertRaises(TimeoutError):
            call_with_deadline(swallow_then_fail, 1, deadline)
        self.assertTrue(deadline.expired)

    def test_deadline_overrides_results_returned_after_it_fires(self) -> None:
        def swallow_and_return() -> str:
            try:
                time.sleep(3)
            except TimeoutError:
                return "late"
            return "on time"

        with self.assertRaises(TimeoutError):
            call_with_deadline(swallow_and_return, 1)


if __name__ == "__main__":
    unittest.main()
