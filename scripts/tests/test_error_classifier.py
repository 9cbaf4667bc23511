#!/usr/bin/env python3
from __future__ import annotations

import unittest
from pathlib import Path

import sys

REPO_ROOT = Path(__file__).resolve().parents[2]
SCRIPTS_DIR = REPO_ROOT / "scripts"
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

from error_classifier import (  # noqa: E402
    CODE_SOURCE_EXPLICIT,
    CODE_SOURCE_INFERRED,
    E2E_API_TIMEOUT,
    E2E_AUTH_MISSING,
    E2E_METADATA_MISSING,
    ERROR_CODE_PATTERNS,
    ERROR_CODES,
    HOST_BUG_PATTERNS,
    classify_error,
    classify_errors,
    classify_host_bug,
    is_credential_prerequisite,
    resolve_error_code,
)

MATCHING = [
    ("plugin discovery is disabled on this host", "E2E_HOST_PLUGIN_DISCOVERY_DISABLED"),
    ("abstractions sha mismatch between host and plugin", "E2E_ABSTRACTIONS_SHA_MISMATCH"),
    ("indexer implementation QobuzIndexer not found in schema", "E2E_SCHEMA_MISSING_IMPLEMENTATION"),
    ("Qobuz credentials not configured", "E2E_AUTH_MISSING"),
    ("missing required env var QOBUZ_EMAIL", "E2E_AUTH_MISSING"),
    ("invalid credentials supplied", "E2E_AUTH_MISSING"),
    ("authentication failed for this account", "E2E_AUTH_MISSING"),
    ("provider said invalid_grant", "E2E_AUTH_MISSING"),
    ("Unauthorized", "E2E_AUTH_MISSING"),
    ("indexer test failed with HTTP 403", "E2E_AUTH_MISSING"),
    ("credential file is missing", "E2E_AUTH_MISSING"),
    ("oauth handshake rejected", "E2E_AUTH_MISSING"),
    ("refresh token rejected", "E2E_AUTH_MISSING"),
    ("api key rejected by provider", "E2E_AUTH_MISSING"),
    ("HTTP 429 Too Many Requests", "E2E_RATE_LIMITED"),
    ("request timed out after 30s", "E2E_API_TIMEOUT"),
    ("connection refused by host", "E2E_HOST_UNREACHABLE"),
    ("zero releases attributed to indexer", "E2E_NO_RELEASES_ATTRIBUTED"),
    ("queue item never appeared", "E2E_QUEUE_NOT_FOUND"),
    ("zero audio files found under /downloads", "E2E_ZERO_AUDIO_FILES"),
    ("missing metadata tags artist", "E2E_METADATA_MISSING"),
    ("docker daemon is not running", "E2E_DOCKER_UNAVAILABLE"),
    ("failed to import release", "E2E_IMPORT_FAILED"),
    ("two components ambiguous for this name", "E2E_COMPONENT_AMBIGUOUS"),
    ("provider unavailable (HTTP 503)", "E2E_PROVIDER_UNAVAILABLE"),
    ("could not load plugin assembly", "E2E_LOAD_FAILURE"),
    ("command was cancelled", "E2E_CANCELLED"),
    ("configuration is invalid", "E2E_CONFIG_INVALID"),
]

NOT_MATCHING = ["album search finished", "all good", "", "   ", None, 404]


class TestErrorClassifier(unittest.TestCase):
    def test_each_fixture_maps_to_its_code(self) -> None:
        for text, expected in MATCHING:
            with self.subTest(text=text):
                self.assertEqual(expected, classify_error(text))

    def test_every_pattern_has_a_matching_fixture(self) -> None:
        for regex, code, _ in ERROR_CODE_PATTERNS:
            with self.subTest(pattern=regex.pattern):
                self.assertIn(code, ERROR_CODES)
                self.assertTrue(any(regex.search(text) for text, _ in MATCHING))

    def test_unrelated_text_is_not_classified(self) -> None:
        for text in NOT_MATCHING:
            with self.subTest(text=text):
                self.assertIsNone(classify_error(text))
                self.assertFalse(is_credential_prerequisite(text))

    def test_first_match_wins(self) -> None:
        # discovery is listed before the generic docker/container row
        self.assertEqual(
            "E2E_HOST_PLUGIN_DISCOVERY_DISABLED",
            classify_error("container log: plugin discovery disabled"),
        )
        self.assertEqual(E2E_AUTH_MISSING, classify_error("timed out waiting, then HTTP 401"))

    def test_credential_prerequisite_flag(self) -> None:
        self.assertTrue(is_credential_prerequisite("indexer test failed with HTTP 401"))
        self.assertTrue(is_credential_prerequisite("credentials are not configured"))
        self.assertFalse(is_credential_prerequisite("api key rejected by provider"))
        self.assertFalse(is_credential_prerequisite("request timed out"))

    def test_classify_errors_uses_first_classifiable_entry(self) -> None:
        self.assertEqual(E2E_API_TIMEOUT, classify_errors(["no idea", "request timed out", "HTTP 401"]))
        self.assertIsNone(classify_errors([]))

    def test_explicit_code_beats_inference(self) -> None:
        self.assertEqual(
            (E2E_METADATA_MISSING, CODE_SOURCE_EXPLICIT),
            resolve_error_code(E2E_METADATA_MISSING, ["HTTP 401 Unauthorized"]),
        )

    def test_credential_heuristic_beats_generic_classifier(self) -> None:
        self.assertEqual(
            (E2E_AUTH_MISSING, CODE_SOURCE_INFERRED),
            resolve_error_code(None, ["request timed out", "HTTP 401"]),
        )

    def test_generic_classifier_is_last(self) -> None:
        self.assertEqual((E2E_API_TIMEOUT, CODE_SOURCE_INFERRED), resolve_error_code(None, ["request timed out"]))
        self.assertEqual((None, None), resolve_error_code(None, ["something odd"]))
        self.assertEqual((None, None), resolve_error_code("", []))


class TestHostBugClassifier(unittest.TestCase):
    def test_each_pattern_detects_its_classification(self) -> None:
        fixtures = {
            "DISCOVERY_DISABLED": "warn: plugin discovery disabled by configuration",
            "ALC": "AssemblyLoadContext could not be unloaded",
            "ABI_MISMATCH": "System.MissingMethodException: Method not found: 'Void Foo()'",
            "DEPENDENCY_DRIFT": "Could not load file or assembly 'NzbDrone.Core, Version=10.0.0.1'",
            "TYPE_INIT": "System.TypeInitializationException was thrown",
            "LOAD_FAILURE": "ReflectionTypeLoadException: Unable to load one or more types",
        }
        for _, classification, severity in HOST_BUG_PATTERNS:
            with self.subTest(classification=classification):
                result = classify_host_bug([fixtures[classification]], ["Schema"])
                self.assertTrue(result["detected"])
                self.assertEqual(classification, result["classification"])
                self.assertEqual(severity, result["severity"])
                self.assertEqual("Schema", result["gate"])

    def test_pattern_order_decides_across_texts(self) -> None:
        result = classify_host_bug(
            ["System.TypeInitializationException", "AssemblyLoadContext unload failed"],
            ["Grab", "Schema"],
        )
        self.assertEqual("ALC", result["classification"])
        self.assertEqual("Schema", result["gate"])

    def test_clean_texts_detect_nothing(self) -> None:
        result = classify_host_bug(["all gates passed", None, 3])
        self.assertFalse(result["detected"])
        self.assertIsNone(result["classification"])
        self.assertIsNone(result["evidence"])

    def test_evidence_is_redacted(self) -> None:
        result = classify_host_bug(["TypeLoadException while contacting 192.168.1.44 with apikey=abcdef123456"])
        self.assertTrue(result["detected"])
        self.assertNotIn("192.168.1.44", result["evidence"])
        self.assertNotIn("abcdef123456", result["evidence"])


if __name__ == "__main__":
    unittest.main()
