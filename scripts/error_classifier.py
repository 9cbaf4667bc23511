#!/usr/bin/env python3
"""Map free-text gate errors to canonical error codes.

One ordered table serves both questions asked of an error message: which
canonical code it carries, and whether it only says that credentials are
missing (a skip, not a failure). First match wins; nothing else in the tree
keeps its own copy of these patterns.
"""
from __future__ import annotations

import re
from typing import Any, Iterable

from redaction import redact

PATTERN_TABLE_VERSION = "v1"

E2E_AUTH_MISSING = "E2E_AUTH_MISSING"
E2E_CONFIG_INVALID = "E2E_CONFIG_INVALID"
E2E_API_TIMEOUT = "E2E_API_TIMEOUT"
E2E_HOST_UNREACHABLE = "E2E_HOST_UNREACHABLE"
E2E_DOCKER_UNAVAILABLE = "E2E_DOCKER_UNAVAILABLE"
E2E_SCHEMA_MISSING_IMPLEMENTATION = "E2E_SCHEMA_MISSING_IMPLEMENTATION"
E2E_HOST_PLUGIN_DISCOVERY_DISABLED = "E2E_HOST_PLUGIN_DISCOVERY_DISABLED"
E2E_NO_RELEASES_ATTRIBUTED = "E2E_NO_RELEASES_ATTRIBUTED"
E2E_QUEUE_NOT_FOUND = "E2E_QUEUE_NOT_FOUND"
E2E_ZERO_AUDIO_FILES = "E2E_ZERO_AUDIO_FILES"
E2E_METADATA_MISSING = "E2E_METADATA_MISSING"
E2E_IMPORT_FAILED = "E2E_IMPORT_FAILED"
E2E_COMPONENT_AMBIGUOUS = "E2E_COMPONENT_AMBIGUOUS"
E2E_PROVIDER_UNAVAILABLE = "E2E_PROVIDER_UNAVAILABLE"
E2E_ABSTRACTIONS_SHA_MISMATCH = "E2E_ABSTRACTIONS_SHA_MISMATCH"
E2E_RATE_LIMITED = "E2E_RATE_LIMITED"
E2E_LOAD_FAILURE = "E2E_LOAD_FAILURE"
E2E_CANCELLED = "E2E_CANCELLED"
E2E_INTERNAL_ERROR = "E2E_INTERNAL_ERROR"

ERROR_CODES = (
    E2E_AUTH_MISSING,
    E2E_CONFIG_INVALID,
    E2E_API_TIMEOUT,
    E2E_HOST_UNREACHABLE,
    E2E_DOCKER_UNAVAILABLE,
    E2E_SCHEMA_MISSING_IMPLEMENTATION,
    E2E_HOST_PLUGIN_DISCOVERY_DISABLED,
    E2E_NO_RELEASES_ATTRIBUTED,
    E2E_QUEUE_NOT_FOUND,
    E2E_ZERO_AUDIO_FILES,
    E2E_METADATA_MISSING,
    E2E_IMPORT_FAILED,
    E2E_COMPONENT_AMBIGUOUS,
    E2E_PROVIDER_UNAVAILABLE,
    E2E_ABSTRACTIONS_SHA_MISMATCH,
    E2E_RATE_LIMITED,
    E2E_LOAD_FAILURE,
    E2E_CANCELLED,
    E2E_INTERNAL_ERROR,
)

CODE_SOURCE_EXPLICIT = "explicit"
CODE_SOURCE_INFERRED = "inferred"

# (regex, code, credential_prerequisite). First match wins.
ERROR_CODE_PATTERNS: list[tuple[re.Pattern[str], str, bool]] = [
    (
        re.compile(r"(?i)plugin discovery (?:is )?disabled|plugins? (?:are |is )?disabled on (?:this )?host"),
        E2E_HOST_PLUGIN_DISCOVERY_DISABLED,
        False,
    ),
    (
        re.compile(r"(?i)abstractions?[\s\-_]*(?:sha|hash)[\s\-_]*mismatch"),
        E2E_ABSTRACTIONS_SHA_MISMATCH,
        False,
    ),
    (
        re.compile(r"(?i)schema (?:is )?missing|implementation .{0,80}not (?:found|present) in (?:the )?schema|no schema entry"),
        E2E_SCHEMA_MISSING_IMPLEMENTATION,
        False,
    ),
    (re.compile(r"(?i)credentials? (?:are )?not configured"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)missing (?:required )?env(?:ironment)? var"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)(?:missing|invalid|expired) credentials?"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)not authenticated|authentication (?:failed|error)|auth error"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)invalid_grant|invalid_client"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)\bunauthori[sz]ed\b|\bforbidden\b"), E2E_AUTH_MISSING, True),
    (re.compile(r"\b40[13]\b"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)credential file (?:is )?missing"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)\boauth"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)\btokens?\b"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)\bcredentials?\b"), E2E_AUTH_MISSING, True),
    (re.compile(r"(?i)\bapi[\s_\-]?key\b"), E2E_AUTH_MISSING, False),
    (
        re.compile(r"(?i)\b429\b|rate[\s\-]?limit|too many requests|quota exceeded"),
        E2E_RATE_LIMITED,
        False,
    ),
    (re.compile(r"(?i)timed? ?out\b|\btimeout\b|deadline exceeded"), E2E_API_TIMEOUT, False),
    (
        re.compile(r"(?i)connection refused|unreachable|no route to host|name or service not known|connect(?:ion)? error"),
        E2E_HOST_UNREACHABLE,
        False,
    ),
    (
        re.compile(r"(?i)(?:zero|no|0) releases? .{0,40}attribut|not attributed|attribution"),
        E2E_NO_RELEASES_ATTRIBUTED,
        False,
    ),
    (re.compile(r"(?i)queue item (?:not found|never appeared)|not (?:found )?in (?:the )?queue"), E2E_QUEUE_NOT_FOUND, False),
    (re.compile(r"(?i)(?:zero|no|0) audio files?"), E2E_ZERO_AUDIO_FILES, False),
    (re.compile(r"(?i)missing (?:required )?(?:metadata )?tags?|metadata (?:is )?missing"), E2E_METADATA_MISSING, False),
    (re.compile(r"(?i)\bdocker\b|\bcontainer\b|\bdaemon\b"), E2E_DOCKER_UNAVAILABLE, False),
    (re.compile(r"(?i)import(?:list)? (?:sync )?failed|failed to import"), E2E_IMPORT_FAILED, False),
    (re.compile(r"(?i)ambiguous"), E2E_COMPONENT_AMBIGUOUS, False),
    (re.compile(r"(?i)provider (?:is )?unavailable|service unavailable|\b50[23]\b"), E2E_PROVIDER_UNAVAILABLE, False),
    (re.compile(r"(?i)could not load|failed to load|load failure|typeload"), E2E_LOAD_FAILURE, False),
    (re.compile(r"(?i)\bcancell?ed\b"), E2E_CANCELLED, False),
    (re.compile(r"(?i)invalid config|configuration (?:is )?invalid|config(?:uration)? error"), E2E_CONFIG_INVALID, False),
]

HOST_BUG_HOST = "host_bug"
HOST_BUG_LIKELY = "likely_host_bug"
HOST_BUG_TRIAGE = "needs_triage"

# (regex, classification, severity). First match wins across all collected text.
HOST_BUG_PATTERNS: list[tuple[re.Pattern[str], str, str]] = [
    (
        re.compile(r"(?i)plugin discovery (?:is )?disabled|E2E_HOST_PLUGIN_DISCOVERY_DISABLED"),
        "DISCOVERY_DISABLED",
        HOST_BUG_HOST,
    ),
    (
        re.compile(r"(?i)assemblyloadcontext|\bALC\b|unloadable context|collectible (?:load )?context"),
        "ALC",
        HOST_BUG_HOST,
    ),
    (
        re.compile(r"(?i)MissingMethodException|method not found|EntryPointNotFound|BadImageFormat|\bABI\b"),
        "ABI_MISMATCH",
        HOST_BUG_LIKELY,
    ),
    (
        re.compile(r"(?i)could not load file or assembly|version conflict|FileLoadException|E2E_ABSTRACTIONS_SHA_MISMATCH"),
        "DEPENDENCY_DRIFT",
        HOST_BUG_LIKELY,
    ),
    (
        re.compile(r"(?i)TypeInitializationException|type initiali[sz]er"),
        "TYPE_INIT",
        HOST_BUG_TRIAGE,
    ),
    (
        re.compile(r"(?i)ReflectionTypeLoadException|TypeLoadException|failed to load plugin|E2E_LOAD_FAILURE"),
        "LOAD_FAILURE",
        HOST_BUG_TRIAGE,
    ),
]


def _match(text: Any) -> tuple[str, bool] | None:
    if not isinstance(text, str) or not text.strip():
        return None
    for regex, code, credential in ERROR_CODE_PATTERNS:
        if regex.search(text):
            return code, credential
    return None


def classify_error(text: Any) -> str | None:
    matched = _match(text)
    return matched[0] if matched else None


def is_credential_prerequisite(text: Any) -> bool:
    matched = _match(text)
    return matched is not None and matched[1]


def classify_errors(errors: Iterable[Any]) -> str | None:
    for error in errors:
        code = classify_error(error)
        if code is not None:
            return code
    return None


def resolve_error_code(
    explicit_code: str | None,
    errors: Iterable[Any],
) -> tuple[str | None, str | None]:
    """Return ``(code, source)``; an explicit code always beats inference."""
    if isinstance(explicit_code, str) and explicit_code:
        return explicit_code, CODE_SOURCE_EXPLICIT
    error_list = list(errors)
    if any(is_credential_prerequisite(error) for error in error_list):
        return E2E_AUTH_MISSING, CODE_SOURCE_INFERRED
    code = classify_errors(error_list)
    if code is None:
        return None, None
    return code, CODE_SOURCE_INFERRED


def classify_host_bug(texts: Iterable[Any], gates: Iterable[str | None] | None = None) -> dict[str, Any]:
    text_list = list(texts)
    gate_list = list(gates) if gates is not None else [None] * len(text_list)
    for regex, classification, severity in HOST_BUG_PATTERNS:
        for text, gate in zip(text_list, gate_list):
            if not isinstance(text, str):
                continue
            match = regex.search(text)
            if match is None:
                continue
            return {
                "detected": True,
                "classification": classification,
                "severity": severity,
                "evidence": redact(text.strip())[:400],
                "gate": gate,
            }
    return {
        "detected": False,
        "classification": None,
        "severity": None,
        "evidence": None,
        "gate": None,
    }
