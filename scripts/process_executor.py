#!/usr/bin/env python3
"""Timeout-bounded container runtime CLI calls with failure classification."""
from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Any

from e2e_common import tail
from redaction import redact

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_CLI_MISSING = 127

DIAGNOSTIC_TIMEOUT_SECONDS = 5
LOG_TAIL_TIMEOUT_SECONDS = 15
EXEC_TIMEOUT_SECONDS = 60
KILL_GRACE_SECONDS = 2

KIND_CLI_MISSING = "cli_missing"
KIND_DAEMON_UNAVAILABLE = "daemon_unavailable"
KIND_PERMISSION_DENIED = "permission_denied"
KIND_CONTAINER_NOT_FOUND = "container_not_found"
KIND_EXEC_FAILED = "exec_failed"
KIND_UNKNOWN = "unknown"

# First match wins; matched against whitespace-collapsed, redacted, lowercased stderr.
FAILURE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"oci runtime exec failed|executable file not found in \$path|exec failed"), KIND_EXEC_FAILED),
    (re.compile(r"permission denied|got permission denied while trying to connect"), KIND_PERMISSION_DENIED),
    (
        re.compile(
            r"cannot connect to the docker daemon|is the docker daemon running|error during connect"
            r"|docker daemon is not running|connection refused"
        ),
        KIND_DAEMON_UNAVAILABLE,
    ),
    (re.compile(r"no such container|no such object|is not running"), KIND_CONTAINER_NOT_FOUND),
    (re.compile(r"command not found|is not recognized as|no such file or directory"), KIND_CLI_MISSING),
]

REMEDIATIONS = {
    KIND_CLI_MISSING: "Install the container runtime CLI and make sure it is on PATH.",
    KIND_DAEMON_UNAVAILABLE: "Start the container daemon (or Docker Desktop) and retry.",
    KIND_PERMISSION_DENIED: "Run as a user in the docker group or with access to the daemon socket.",
    KIND_CONTAINER_NOT_FOUND: "Check the container name and that the container is running (docker ps).",
    KIND_EXEC_FAILED: "The command is not available inside the container; check the image contents.",
    KIND_UNKNOWN: "Inspect stderr for details.",
}


def normalize_stderr(stderr: str) -> str:
    return re.sub(r"\s+", " ", redact(stderr or "")).strip().lower()


def classify_failure(stderr: str) -> str:
    normalized = normalize_stderr(stderr)
    for regex, kind in FAILURE_PATTERNS:
        if regex.search(normalized):
            return kind
    return KIND_UNKNOWN


@dataclass
class ProcessResult:
    args: list[str]
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_ms: int = 0
    failure_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def remediation(self) -> str | None:
        if self.failure_kind is None:
            return None
        return REMEDIATIONS.get(self.failure_kind, REMEDIATIONS[KIND_UNKNOWN])

    def to_details(self) -> dict[str, Any]:
        return {
            "command": redact(" ".join(self.args)),
            "exitCode": self.exit_code,
            "timedOut": self.timed_out,
            "durationMs": self.duration_ms,
            "failureKind": self.failure_kind,
            "remediation": self.remediation,
            "stderrTail": redact(tail(self.stderr, 10)),
        }


def _kill_process_group(proc: subprocess.Popen) -> None:
    # the child leads its own session, so wrappers and their forks go down together
    if hasattr(os, "killpg"):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


def _collect_after_kill(proc: subprocess.Popen) -> tuple[str, str]:
    try:
        return proc.communicate(timeout=KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        # a process outside the group still holds the pipes; drop them
        logger.warning("%s left descendants holding its output pipes", redact(str(proc.args[0])))
        for stream in (proc.stdout, proc.stderr):
            if stream is not None:
                stream.close()
        proc.wait(timeout=KILL_GRACE_SECONDS)
        return "", ""


def run_process(args: list[str], timeout_seconds: float = DIAGNOSTIC_TIMEOUT_SECONDS) -> ProcessResult:
    """Run ``args`` and never wait past ``timeout_seconds``; the child is killed on overrun.

    Output is decoded as UTF-8 with undecodable bytes replaced, so container logs in any
    encoding still come back as a classified result.
    """
    started = time.perf_counter()
    try:
        proc = subprocess.Popen(
            args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        return ProcessResult(
            args=list(args),
            exit_code=EXIT_CLI_MISSING,
            stdout="",
            stderr=str(exc),
            duration_ms=int((time.perf_counter() - started) * 1000),
            failure_kind=KIND_CLI_MISSING,
        )
    except PermissionError as exc:
        return ProcessResult(
            args=list(args),
            exit_code=126,
            stdout="",
            stderr=str(exc),
            duration_ms=int((time.perf_counter() - started) * 1000),
            failure_kind=KIND_PERMISSION_DENIED,
        )

    try:
        stdout, stderr = proc.communicate(timeout=timeout_seconds)
    except TimeoutError:
        # an outer deadline fired mid-call; do not leave the child behind
        _kill_process_group(proc)
        _collect_after_kill(proc)
        raise
    except subprocess.TimeoutExpired:
        _kill_process_group(proc)
        stdout, stderr = _collect_after_kill(proc)
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.warning("%s killed after %ss timeout", redact(args[0]), timeout_seconds)
        return ProcessResult(
            args=list(args),
            exit_code=EXIT_TIMEOUT,
            stdout=stdout or "",
            stderr=stderr or "",
            timed_out=True,
            duration_ms=duration_ms,
            failure_kind=classify_failure(stderr or ""),
        )

    duration_ms = int((time.perf_counter() - started) * 1000)
    failure_kind = None
    if proc.returncode != 0:
        failure_kind = classify_failure(stderr)
    return ProcessResult(
        args=list(args),
        exit_code=proc.returncode,
        stdout=stdout,
        stderr=stderr,
        duration_ms=duration_ms,
        failure_kind=failure_kind,
    )


class ContainerRuntime:
    def __init__(self, cli: str = "docker", default_timeout: float = DIAGNOSTIC_TIMEOUT_SECONDS) -> None:
        self.cli = cli
        self.default_timeout = default_timeout

    def _run(self, args: list[str], timeout: float | None) -> ProcessResult:
        return run_process([self.cli, *args], self.default_timeout if timeout is None else timeout)

    def ps(self, timeout: float | None = None) -> ProcessResult:
        return self._run(["ps", "--format", "{{.Names}}"], timeout)

    def logs(self, container: str, tail_lines: int = 200, timeout: float = LOG_TAIL_TIMEOUT_SECONDS) -> ProcessResult:
        return self._run(["logs", "--tail", str(tail_lines), container], timeout)

    def exec(self, container: str, command: list[str], timeout: float = EXEC_TIMEOUT_SECONDS) -> ProcessResult:
        return self._run(["exec", container, *command], timeout)

    def inspect(self, container: str, timeout: float | None = None) -> ProcessResult:
        return self._run(["inspect", container], timeout)

    def cp(self, container: str, source: str, destination: str, timeout: float = EXEC_TIMEOUT_SECONDS) -> ProcessResult:
        return self._run(["cp", f"{container}:{source}", destination], timeout)

    def restart(self, container: str, timeout: float = EXEC_TIMEOUT_SECONDS) -> ProcessResult:
        return self._run(["restart", container], timeout)
