#!/usr/bin/env python3
"""Gate functions and the controller that sequences them.

Gates run one at a time in a fixed order because later gates use host state
created by earlier ones. Every gate produces exactly one ``GateResult``; no
exception crosses the gate boundary.
"""
from __future__ import annotations

import json
import logging
import signal
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import PurePosixPath
from typing import Any, Callable

from e2e_common import utc_now_iso
from e2e_config import GATE_ORDER, E2EConfig
from error_classifier import (
    CODE_SOURCE_EXPLICIT,
    CODE_SOURCE_INFERRED,
    E2E_API_TIMEOUT,
    E2E_AUTH_MISSING,
    E2E_DOCKER_UNAVAILABLE,
    E2E_HOST_PLUGIN_DISCOVERY_DISABLED,
    E2E_IMPORT_FAILED,
    E2E_INTERNAL_ERROR,
    E2E_METADATA_MISSING,
    E2E_NO_RELEASES_ATTRIBUTED,
    E2E_QUEUE_NOT_FOUND,
    E2E_RATE_LIMITED,
    E2E_SCHEMA_MISSING_IMPLEMENTATION,
    E2E_ZERO_AUDIO_FILES,
    classify_host_bug,
    is_credential_prerequisite,
    resolve_error_code,
)
from gate_results import (
    OUTCOME_FAILED,
    TIMEOUT_COMMAND_POLL,
    TIMEOUT_GATE,
    TIMEOUT_HTTP,
    TIMEOUT_PROCESS,
    TIMEOUT_QUEUE_POLL,
    TIMEOUT_RESTART_POLL,
    GateResult,
    failed,
    skipped,
    success,
    timeout_detail,
)
from host_api import (
    ComponentDefinition,
    HostApi,
    HostApiError,
    HostApiInconclusive,
    HostApiTimeout,
    PollTimeout,
    poll_until,
)
from prerequisites import evaluate
from process_executor import ContainerRuntime, ProcessResult
from rate_limited_client import OUTCOME_INCONCLUSIVE
from redaction import endpoint_for_diagnostics, redact
from selection import candidates_from_releases, select_candidate

logger = logging.getLogger(__name__)

GATE_SCHEMA = "Schema"
GATE_SEARCH = "Search"
GATE_ALBUM_SEARCH = "AlbumSearch"
GATE_GRAB = "Grab"
GATE_METADATA = "Metadata"
GATE_IMPORT_LIST = "ImportList"
GATE_PERSISTENCE = "Persistence"
GATE_AUTH_FAILURE = "AuthFailure"

# Gate -> gates whose success it builds on.
PREDECESSORS = {
    GATE_SEARCH: (GATE_SCHEMA,),
    GATE_ALBUM_SEARCH: (GATE_SCHEMA,),
    GATE_GRAB: (GATE_ALBUM_SEARCH,),
    GATE_METADATA: (GATE_GRAB,),
    GATE_IMPORT_LIST: (GATE_SCHEMA,),
    GATE_PERSISTENCE: (GATE_SCHEMA,),
}

# Gates that probe authentication on purpose; their auth errors are findings, not skips.
CREDENTIAL_EXEMPT_GATES = frozenset({GATE_AUTH_FAILURE})

COMMAND_DONE_STATES = {"completed", "failed", "aborted", "cancelled", "orphaned"}
MAX_METADATA_FILES = 5


class GateSkip(Exception):
    def __init__(self, reason: str, *, error_code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.error_code = error_code
        self.details = details or {}


class GateFailure(Exception):
    def __init__(
        self,
        errors: list[str] | str,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))
        self.error_code = error_code
        self.details = details or {}


@dataclass
class RunState:
    components: dict[str, ComponentDefinition] = field(default_factory=dict)
    selected_release: dict[str, Any] | None = None
    grab_download_id: str | None = None
    audio_files: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)


@dataclass
class Deadline:
    timeout_seconds: float = 0
    expired: bool = False


def call_with_deadline(fn: Callable[[], Any], timeout_seconds: float, deadline: Deadline | None = None) -> Any:
    """Run ``fn`` and raise ``TimeoutError`` once ``timeout_seconds`` elapse.

    The alarm can land inside a socket read, where the HTTP stack turns it into its own
    timeout error. Once the alarm has fired, whatever ``fn`` returns or raises is
    replaced by ``TimeoutError``, and ``deadline.expired`` lets ``fn`` stop retrying.
    """
    if timeout_seconds <= 0:
        return fn()
    if deadline is None:
        deadline = Deadline(timeout_seconds)
    message = f"gate execution timed out after {timeout_seconds}s"

    can_alarm = (
        hasattr(signal, "SIGALRM")
        and hasattr(signal, "setitimer")
        and threading.current_thread() is threading.main_thread()
    )
    if can_alarm:
        def _timeout_handler(_: int, __: Any) -> None:
            deadline.expired = True
            raise TimeoutError(message)

        previous_handler = signal.getsignal(signal.SIGALRM)
        signal.signal(signal.SIGALRM, _timeout_handler)
        signal.setitimer(signal.ITIMER_REAL, float(timeout_seconds))
        try:
            outcome = fn()
        except TimeoutError:
            raise
        except Exception as exc:
            if deadline.expired:
                raise TimeoutError(message) from exc
            raise
        finally:
            signal.setitimer(signal.ITIMER_REAL, 0.0)
            signal.signal(signal.SIGALRM, previous_handler)
        if deadline.expired:
            raise TimeoutError(message)
        return outcome

    started = time.perf_counter()
    outcome = fn()
    elapsed_seconds = time.perf_counter() - started
    if elapsed_seconds > timeout_seconds:
        raise TimeoutError(
            f"gate execution exceeded timeout ({elapsed_seconds:.3f}s > {timeout_seconds}s)"
        )
    return outcome


def _norm(value: Any) -> str:
    return str(value or "").strip().lower()


def _release_indexer_id(release: dict[str, Any]) -> int | None:
    value = release.get("indexerId")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return None


class GateController:
    def __init__(
        self,
        config: E2EConfig,
        api: HostApi,
        runtime: ContainerRuntime | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.api = api
        self.runtime = runtime
        self.state = RunState()
        self._deadline = Deadline()
        self._sleep = sleep
        self._clock = clock
        self._gate_functions: dict[str, Callable[[dict[str, Any]], None]] = {
            GATE_SCHEMA: self._gate_schema,
            GATE_SEARCH: self._gate_search,
            GATE_ALBUM_SEARCH: self._gate_album_search,
            GATE_GRAB: self._gate_grab,
            GATE_METADATA: self._gate_metadata,
            GATE_IMPORT_LIST: self._gate_import_list,
            GATE_PERSISTENCE: self._gate_persistence,
            GATE_AUTH_FAILURE: self._gate_auth_failure,
        }

    @property
    def plugin(self) -> str:
        return self.config.plugin.name

    @property
    def container(self) -> str | None:
        return self.config.host.container

    def run(self, gates: list[str] | None = None) -> list[GateResult]:
        wanted = set(gates) if gates is not None else set(self.config.gates.enabled)
        results: list[GateResult] = []
        for gate in GATE_ORDER:
            if gate not in wanted:
                continue
            result = self.run_gate(gate)
            logger.info(
                "gate %s: %s%s",
                gate,
                result.outcome,
                f" ({result.error_code})" if result.error_code else "",
            )
            results.append(result)
        return results

    def run_gate(self, gate: str) -> GateResult:
        started_at = utc_now_iso()

        blocked = self._precheck(gate)
        if blocked is not None:
            return blocked

        for predecessor in PREDECESSORS.get(gate, ()):
            if predecessor not in self.state.completed:
                return skipped(
                    gate,
                    self.plugin,
                    f"predecessor {predecessor} did not run or did not succeed",
                    details={"predecessor": predecessor},
                    started_at=started_at,
                )

        details: dict[str, Any] = {}
        gate_timeout = self.config.gates.timeout_for(gate)
        self._deadline = Deadline(gate_timeout)
        try:
            call_with_deadline(lambda: self._gate_functions[gate](details), gate_timeout, self._deadline)
        except GateSkip as exc:
            return skipped(
                gate,
                self.plugin,
                exc.reason,
                error_code=exc.error_code,
                error_code_source=CODE_SOURCE_EXPLICIT if exc.error_code else None,
                details={**details, **exc.details},
                started_at=started_at,
            )
        except GateFailure as exc:
            result = failed(
                gate,
                self.plugin,
                exc.errors,
                error_code=exc.error_code,
                error_code_source=CODE_SOURCE_EXPLICIT if exc.error_code else None,
                details={**details, **exc.details},
                started_at=started_at,
            )
            return self._finalize(result)
        except PollTimeout as exc:
            details["timeout"] = timeout_detail(
                timeout_type=exc.timeout_type,
                timeout_seconds=exc.timeout_seconds,
                endpoint=exc.endpoint,
                operation=exc.operation,
                phase=exc.phase,
            )
            return failed(
                gate,
                self.plugin,
                [str(exc)],
                error_code=E2E_API_TIMEOUT,
                error_code_source=CODE_SOURCE_EXPLICIT,
                details=details,
                started_at=started_at,
            )
        except HostApiTimeout as exc:
            details["timeout"] = timeout_detail(
                timeout_type=TIMEOUT_HTTP,
                timeout_seconds=exc.timeout_seconds,
                endpoint=exc.endpoint,
                operation=exc.operation,
                phase=details.get("phase", "request"),
            )
            return failed(
                gate,
                self.plugin,
                [str(exc)],
                error_code=E2E_API_TIMEOUT,
                error_code_source=CODE_SOURCE_EXPLICIT,
                details=details,
                started_at=started_at,
            )
        except HostApiInconclusive as exc:
            return skipped(
                gate,
                self.plugin,
                f"inconclusive: {exc}",
                error_code=E2E_RATE_LIMITED,
                error_code_source=CODE_SOURCE_EXPLICIT,
                details=details,
                started_at=started_at,
            )
        except HostApiError as exc:
            if exc.status_code is not None:
                details["statusCode"] = exc.status_code
            result = failed(gate, self.plugin, [str(exc)], details=details, started_at=started_at)
            return self._finalize(result)
        except TimeoutError as exc:
            details["timeout"] = timeout_detail(
                timeout_type=TIMEOUT_GATE,
                timeout_seconds=gate_timeout,
                endpoint="",
                operation=gate,
                phase=details.get("phase", "gate"),
            )
            return failed(
                gate,
                self.plugin,
                [f"{gate} timeout exceeded: {exc}"],
                error_code=E2E_API_TIMEOUT,
                error_code_source=CODE_SOURCE_EXPLICIT,
                details=details,
                started_at=started_at,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("unhandled exception in gate %s", gate)
            details["exception"] = redact(repr(exc))
            return failed(
                gate,
                self.plugin,
                [f"unhandled gate exception: {exc}"],
                error_code=E2E_INTERNAL_ERROR,
                error_code_source=CODE_SOURCE_EXPLICIT,
                details=details,
                started_at=started_at,
            )

        self.state.completed.append(gate)
        return success(gate, self.plugin, details, started_at=started_at)

    def _precheck(self, gate: str) -> GateResult | None:
        requirement = self.config.plugin.prerequisites.get(gate)
        if requirement is None or requirement.empty:
            return None
        check = evaluate(requirement, self.config.plugin.field_values())
        if check.satisfied:
            return None
        return skipped(
            gate,
            self.plugin,
            check.skip_reason(gate),
            error_code=E2E_AUTH_MISSING,
            error_code_source=CODE_SOURCE_EXPLICIT,
            details={"missingFields": check.missing, "missingFieldGroups": check.missing_groups},
        )

    def _finalize(self, result: GateResult) -> GateResult:
        """Apply the error-code precedence: explicit, then credential heuristic, then classifier."""
        if result.outcome != OUTCOME_FAILED or result.error_code_source == CODE_SOURCE_EXPLICIT:
            return result
        if result.gate in CREDENTIAL_EXEMPT_GATES:
            return result
        if any(is_credential_prerequisite(error) for error in result.errors):
            logger.warning("gate %s skipped: credentials unavailable", result.gate)
            return skipped(
                result.gate,
                result.plugin,
                f"credentials unavailable: {result.errors[0]}",
                error_code=E2E_AUTH_MISSING,
                error_code_source=CODE_SOURCE_INFERRED,
                details={**result.details, "credentialPrerequisite": True},
                started_at=result.started_at,
            )
        code, source = resolve_error_code(None, result.errors)
        return replace(result, error_code=code, error_code_source=source)

    # -- helpers -------------------------------------------------------------

    def _poll(
        self,
        probe: Callable[[], Any],
        *,
        timeout_seconds: float,
        path: str,
        operation: str,
        phase: str,
        timeout_type: str,
    ) -> Any:
        return poll_until(
            probe,
            timeout_seconds=timeout_seconds,
            interval_seconds=self.config.gates.poll_interval_seconds,
            endpoint=endpoint_for_diagnostics(self.api.url(path)),
            operation=operation,
            phase=phase,
            timeout_type=timeout_type,
            sleep=self._sleep,
            clock=self._clock,
        )

    def _wait_for_command(self, command: dict[str, Any], timeout_seconds: float, phase: str) -> dict[str, Any]:
        command_id = command.get("id")
        if not isinstance(command_id, int):
            raise HostApiError(f"command {command.get('name')} returned no id")

        def probe() -> dict[str, Any] | None:
            current = self.api.get_command(command_id)
            if _norm(current.get("status")) in COMMAND_DONE_STATES:
                return current
            return None

        return self._poll(
            probe,
            timeout_seconds=timeout_seconds,
            path=f"/command/{command_id}",
            operation=f"command {command.get('name')}",
            phase=phase,
            timeout_type=TIMEOUT_COMMAND_POLL,
        )

    def _require_container(self, purpose: str) -> tuple[ContainerRuntime, str]:
        if self.runtime is None or not self.container:
            raise GateSkip(f"container not configured; cannot {purpose}")
        return self.runtime, self.container

    def _process_failure(self, proc: ProcessResult, what: str, phase: str) -> GateFailure:
        if proc.timed_out:
            return GateFailure(
                f"{what} timed out after {proc.duration_ms}ms",
                error_code=E2E_API_TIMEOUT,
                details={
                    "process": proc.to_details(),
                    "timeout": timeout_detail(
                        timeout_type=TIMEOUT_PROCESS,
                        timeout_seconds=round(proc.duration_ms / 1000.0, 3),
                        endpoint="",
                        operation=what,
                        phase=phase,
                    ),
                },
            )
        return GateFailure(
            f"{what} failed ({proc.failure_kind}): {proc.remediation}",
            error_code=E2E_DOCKER_UNAVAILABLE,
            details={"process": proc.to_details()},
        )

    def _host_log_findings(self) -> dict[str, Any] | None:
        if self.runtime is None or not self.container:
            return None
        proc = self.runtime.logs(self.container, tail_lines=300)
        if not proc.ok:
            return None
        lines = [line for line in proc.stdout.splitlines() if line.strip()]
        finding = classify_host_bug(lines)
        return finding if finding["detected"] else None

    # -- gates ---------------------------------------------------------------

    def _gate_schema(self, details: dict[str, Any]) -> None:
        details["phase"] = "schema"
        implementations = {
            kind: impl for kind, impl in self.config.plugin.implementations.items() if impl
        }
        if not implementations:
            raise GateFailure("plugin declares no implementations", error_code=E2E_SCHEMA_MISSING_IMPLEMENTATION)

        schema_entries: dict[str, ComponentDefinition] = {}
        missing: list[str] = []
        for kind, implementation in sorted(implementations.items()):
            entries = self.api.get_schema(kind)
            match = next((entry for entry in entries if _norm(entry.implementation) == _norm(implementation)), None)
            if match is None:
                missing.append(f"{kind} implementation {implementation} not found in schema")
            else:
                schema_entries[kind] = match
        details["schemaImplementations"] = {kind: entry.implementation for kind, entry in schema_entries.items()}

        if missing:
            finding = self._host_log_findings()
            if finding is not None:
                details["hostLogFinding"] = finding
            if finding is not None and finding["classification"] == "DISCOVERY_DISABLED":
                raise GateFailure(
                    [*missing, f"host log: {finding['evidence']}"],
                    error_code=E2E_HOST_PLUGIN_DISCOVERY_DISABLED,
                )
            raise GateFailure(missing, error_code=E2E_SCHEMA_MISSING_IMPLEMENTATION)

        details["phase"] = "resolve"
        resolution: dict[str, Any] = {}
        for kind, entry in sorted(schema_entries.items()):
            component, record = self._resolve_component(kind, entry)
            self.state.components[kind] = component
            resolution[kind] = record
        details["componentResolution"] = resolution

    def _resolve_component(self, kind: str, entry: ComponentDefinition) -> tuple[ComponentDefinition, dict[str, Any]]:
        wanted_name = self.config.plugin.component_name(kind)
        existing = self.api.list_components(kind)
        by_name = [item for item in existing if _norm(item.name) == _norm(wanted_name) and item.id is not None]
        by_impl = [
            item for item in existing if _norm(item.implementation) == _norm(entry.implementation) and item.id is not None
        ]

        candidates, matched_on = (by_name, "name") if by_name else (by_impl, "implementation")
        candidate_ids = sorted(item.id for item in candidates if item.id is not None)
        if len(candidates) == 1:
            return candidates[0], {
                "id": candidates[0].id,
                "matchedOn": matched_on,
                "candidateIds": candidate_ids,
                "safeToPersist": True,
            }
        if len(candidates) > 1:
            # ambiguity is reported, not fatal; the lowest id keeps reruns stable
            chosen = min(candidates, key=lambda item: item.id or 0)
            logger.warning(
                "%s: %d existing components match by %s; using id %s",
                kind,
                len(candidates),
                matched_on,
                chosen.id,
            )
            return chosen, {
                "id": chosen.id,
                "matchedOn": "none",
                "candidateIds": candidate_ids,
                "safeToPersist": False,
            }

        body = entry.with_values(wanted_name, self.config.plugin.field_values(kind))
        created = self.api.create_component(kind, body)
        return created, {
            "id": created.id,
            "matchedOn": "created",
            "candidateIds": [created.id] if created.id is not None else [],
            "safeToPersist": True,
        }

    def _component_body(self, kind: str) -> dict[str, Any]:
        component = self.state.components[kind]
        body = dict(component.raw)
        values = {key.lower(): value for key, value in self.config.plugin.field_values(kind).items()}
        body["fields"] = [
            {**item.to_payload(), "value": values.get(item.name.lower(), item.value)} for item in component.fields
        ]
        return body

    def _gate_search(self, details: dict[str, Any]) -> None:
        details["phase"] = "indexer_test"
        if "indexer" not in self.state.components:
            raise GateSkip("plugin has no indexer component")
        indexer = self.state.components["indexer"]
        details["indexerId"] = indexer.id
        self.api.test_component("indexer", self._component_body("indexer"))
        details["testPassed"] = True

    def _gate_album_search(self, details: dict[str, Any]) -> None:
        album_id = self.config.album_search.album_id
        if album_id is None:
            raise GateSkip("albumSearch.albumId is not configured")
        indexer = self.state.components.get("indexer")
        if indexer is None:
            raise GateSkip("plugin has no indexer component")
        details["albumId"] = album_id

        details["phase"] = "command"
        command = self.api.post_command("AlbumSearch", albumIds=[album_id])
        finished = self._wait_for_command(command, self.config.album_search.command_timeout_seconds, "album_search")
        if _norm(finished.get("status")) != "completed":
            raise GateFailure(
                f"AlbumSearch command ended with status {finished.get('status')}: {finished.get('message') or ''}".strip()
            )

        details["phase"] = "releases"
        releases = self.api.list_releases(album_id)
        attributed = [
            release
            for release in releases
            if _release_indexer_id(release) == indexer.id
            or (_norm(release.get("indexer")) and _norm(release.get("indexer")) == _norm(indexer.name))
        ]
        null_key = [
            release for release in releases if _release_indexer_id(release) is None and not _norm(release.get("indexer"))
        ]
        details.update(
            {
                "releaseCount": len(releases),
                "attributedCount": len(attributed),
                "nullIndexerReleaseCount": len(null_key),
                "parserRegressionSuspected": bool(null_key),
            }
        )
        if null_key:
            logger.error(
                "%d of %d releases carry no indexer attribution at all; likely a release parser regression",
                len(null_key),
                len(releases),
            )
        if not releases:
            raise GateFailure(f"AlbumSearch returned no releases for album {album_id}")
        if not attributed:
            raise GateFailure(
                f"{len(releases)} releases returned but zero attributed to indexer {indexer.name} (id {indexer.id})",
                error_code=E2E_NO_RELEASES_ATTRIBUTED,
            )

        candidates = candidates_from_releases(attributed)
        winner, basis = select_candidate(candidates, self.config.album_search.size_policy)
        self.state.selected_release = attributed[winner.original_index]
        details["selection"] = basis
        details["selectedTitle"] = winner.title

    def _gate_grab(self, details: dict[str, Any]) -> None:
        release = self.state.selected_release
        if release is None:
            raise GateSkip("predecessor AlbumSearch selected no release")
        title = release.get("title")
        runtime, container = self._require_container("verify downloaded files")

        details["phase"] = "grab"
        grabbed = self.api.grab_release({"guid": release.get("guid"), "indexerId": release.get("indexerId")})
        download_id = grabbed.get("downloadId") if isinstance(grabbed, dict) else None
        self.state.grab_download_id = download_id

        def matches(item: dict[str, Any]) -> bool:
            if download_id and item.get("downloadId") == download_id:
                return True
            return bool(title) and _norm(item.get("title") or item.get("sourceTitle")) == _norm(title)

        details["phase"] = "queue_appearance"

        def queued_or_done() -> dict[str, Any] | None:
            for item in self.api.get_queue():
                if matches(item):
                    return item
            for item in self.api.get_history():
                if matches(item):
                    return item
            return None

        self._poll(
            queued_or_done,
            timeout_seconds=self.config.grab.queue_timeout_seconds,
            path="/queue",
            operation="wait for queue item",
            phase="queue_appearance",
            timeout_type=TIMEOUT_QUEUE_POLL,
        )

        details["phase"] = "download_completion"

        def left_queue() -> bool:
            for item in self.api.get_queue():
                if matches(item) and _norm(item.get("status")) not in ("completed", "importpending"):
                    return False
            return True

        self._poll(
            left_queue,
            timeout_seconds=self.config.grab.download_timeout_seconds,
            path="/queue",
            operation="wait for download completion",
            phase="download_completion",
            timeout_type=TIMEOUT_QUEUE_POLL,
        )

        details["phase"] = "history"
        history = [item for item in self.api.get_history() if matches(item)]
        details["historyRecordCount"] = len(history)
        if not history:
            raise GateFailure(
                f"grabbed release {title!r} left the queue but has no history record",
                error_code=E2E_QUEUE_NOT_FOUND,
            )

        details["phase"] = "audio_files"
        download_path = self.config.grab.download_path
        proc = runtime.exec(container, ["find", download_path, "-type", "f"])
        if not proc.ok:
            raise self._process_failure(proc, "listing downloaded files", "audio_files")
        extensions = tuple(self.config.grab.audio_extensions)
        audio_files = sorted(
            line.strip() for line in proc.stdout.splitlines() if line.strip().lower().endswith(extensions)
        )
        details["audioFileCount"] = len(audio_files)
        if not audio_files:
            raise GateFailure(
                f"zero audio files found under {download_path}",
                error_code=E2E_ZERO_AUDIO_FILES,
            )
        self.state.audio_files = audio_files

    def _gate_metadata(self, details: dict[str, Any]) -> None:
        if not self.state.audio_files:
            raise GateSkip("predecessor Grab recorded no audio files")
        runtime, container = self._require_container("probe audio metadata")
        required = [tag.lower() for tag in self.config.metadata.required_tags]
        details["phase"] = "probe"
        problems: list[str] = []
        checked: list[dict[str, Any]] = []
        for path in self.state.audio_files[:MAX_METADATA_FILES]:
            proc = runtime.exec(container, [*self.config.metadata.probe_command, path])
            if not proc.ok:
                raise self._process_failure(proc, "metadata probe", "probe")
            try:
                payload = json.loads(proc.stdout or "{}")
            except json.JSONDecodeError:
                payload = {}
            media_format = payload.get("format") if isinstance(payload, dict) else None
            raw_tags = media_format.get("tags") if isinstance(media_format, dict) else None
            if not isinstance(raw_tags, dict):
                raw_tags = {}
            tags = {str(key).lower(): value for key, value in raw_tags.items()}
            missing = [tag for tag in required if not str(tags.get(tag) or "").strip()]
            name = PurePosixPath(path).name
            checked.append({"file": name, "missingTags": missing})
            if missing:
                problems.append(f"{name}: missing metadata tags {', '.join(missing)}")
        details["filesChecked"] = checked
        if problems:
            raise GateFailure(problems, error_code=E2E_METADATA_MISSING)

    def _gate_import_list(self, details: dict[str, Any]) -> None:
        component = self.state.components.get("importlist")
        if component is None:
            raise GateSkip("plugin has no import list")
        details["importListId"] = component.id
        details["phase"] = "sync"
        command = self.api.post_command("ImportListSync", definitionId=component.id)
        finished = self._wait_for_command(command, self.config.import_list.sync_timeout_seconds, "import_list_sync")
        status = _norm(finished.get("status"))
        details["commandStatus"] = status
        if status != "completed":
            raise GateFailure(
                f"import list sync failed with status {status}: {finished.get('message') or ''}".strip(),
                error_code=E2E_IMPORT_FAILED,
            )

    def _snapshot(self) -> dict[str, Any]:
        history = self.api.get_history()
        return {
            "components": {
                kind: {"id": item.id, "name": item.name, "implementation": item.implementation}
                for kind, item in self.state.components.items()
            },
            "historyIds": sorted(item["id"] for item in history if isinstance(item.get("id"), int)),
            "queueIds": sorted(item["id"] for item in self.api.get_queue() if isinstance(item.get("id"), int)),
        }

    def _gate_persistence(self, details: dict[str, Any]) -> None:
        runtime, container = self._require_container("restart the host")
        details["phase"] = "snapshot"
        before = self._snapshot()
        details["before"] = {
            "componentCount": len(before["components"]),
            "historyCount": len(before["historyIds"]),
            "queueCount": len(before["queueIds"]),
        }

        details["phase"] = "restart"
        proc = runtime.restart(container, timeout=self.config.persistence.restart_timeout_seconds)
        if not proc.ok:
            raise self._process_failure(proc, "container restart", "restart")

        def host_ready() -> dict[str, Any] | None:
            try:
                return self.api.system_status() or None
            except HostApiTimeout:
                if self._deadline.expired:
                    raise
                return None
            except HostApiError:
                return None

        self._poll(
            host_ready,
            timeout_seconds=self.config.persistence.restart_timeout_seconds,
            path="/system/status",
            operation="wait for host after restart",
            phase="restart",
            timeout_type=TIMEOUT_RESTART_POLL,
        )

        details["phase"] = "verify"
        errors: list[str] = []
        for kind, expected in sorted(before["components"].items()):
            implementation = expected["implementation"]
            if not any(_norm(entry.implementation) == _norm(implementation) for entry in self.api.get_schema(kind)):
                errors.append(f"{kind} implementation {implementation} not found in schema after restart")
            current = self.api.list_components(kind)
            same = [item for item in current if item.id == expected["id"]]
            if not same:
                errors.append(f"{kind} component {expected['id']} missing after restart")
            elif _norm(same[0].name) != _norm(expected["name"]) or _norm(same[0].implementation) != _norm(implementation):
                errors.append(f"{kind} component {expected['id']} changed after restart")
            named = [item for item in current if _norm(item.name) == _norm(expected["name"])]
            if len(named) > 1:
                errors.append(f"{kind} has {len(named)} duplicate components named {expected['name']!r} after restart")

        after_history = {item["id"] for item in self.api.get_history() if isinstance(item.get("id"), int)}
        lost = [item for item in before["historyIds"] if item not in after_history]
        if lost:
            errors.append(f"{len(lost)} history records lost across restart")
        after_queue = [item["id"] for item in self.api.get_queue() if isinstance(item.get("id"), int)]
        if len(after_queue) != len(set(after_queue)):
            errors.append("duplicate queue entries after restart")
        details["after"] = {"historyCount": len(after_history), "queueCount": len(after_queue)}
        if errors:
            raise GateFailure(errors)

    def _gate_auth_failure(self, details: dict[str, Any]) -> None:
        settings = self.config.auth_failure
        expected = int(settings.mode)
        details.update({"mode": settings.mode, "expectedStatus": expected, "phase": "probe"})
        invalid_headers = {"X-Api-Key": settings.invalid_api_key, "Accept": "application/json"}
        if settings.probe_url:
            outcome = self.api.requests.request(
                "GET",
                settings.probe_url,
                headers=invalid_headers,
                expect_failure=True,
                expect_status={expected},
            )
            endpoint = endpoint_for_diagnostics(settings.probe_url)
        else:
            outcome = self.api.raw_request(
                "GET",
                "/system/status",
                api_key=settings.invalid_api_key,
                expect_failure=True,
                expect_status={expected},
            )
            endpoint = endpoint_for_diagnostics(self.api.url("/system/status"))

        details.update(
            {
                "actualStatus": outcome.status_code,
                "failedAsExpected": outcome.failed_as_expected,
                "retryAfter": outcome.retry_after,
                "attempts": outcome.attempts,
            }
        )
        if outcome.timed_out:
            raise GateFailure(
                outcome.error or "auth failure probe timed out",
                error_code=E2E_API_TIMEOUT,
                details={
                    "timeout": timeout_detail(
                        timeout_type=TIMEOUT_HTTP,
                        timeout_seconds=self.api.timeout_seconds,
                        endpoint=endpoint,
                        operation="auth failure probe",
                        phase="probe",
                    )
                },
            )
        if outcome.status == OUTCOME_INCONCLUSIVE:
            raise GateSkip(
                "auth failure probe stayed rate limited; result inconclusive",
                error_code=E2E_RATE_LIMITED,
            )
        if outcome.status_code is None:
            raise GateFailure(outcome.error or "auth failure probe got no response")
        if outcome.status_code is not None and 200 <= outcome.status_code < 300:
            raise GateFailure(f"request with an invalid API key was accepted (HTTP {outcome.status_code})")
        if outcome.status_code != expected:
            raise GateFailure(f"expected HTTP {expected} for an invalid API key, got HTTP {outcome.status_code}")
        if expected == 429 and not outcome.retry_after:
            raise GateFailure("HTTP 429 response is missing the Retry-After header")
        details["failedAsExpected"] = True
