#!/usr/bin/env python3
"""Load the gate run configuration.

The JSON document is overlaid with ``E2E_<SECTION>__<KEY>`` environment
variables (plus a few short aliases), validated against the config schema and
then resolved: any string value of the form ``env:NAME`` is replaced by that
environment variable, so the checked-in file never needs to hold a secret.
"""
from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from e2e_common import canonical_json_hash, read_json, schema_errors
from prerequisites import Requirement, has_value

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_CONFIG_PATH = REPO_ROOT / "data/config/e2e_gates.v1.json"
CONFIG_SCHEMA_PATH = REPO_ROOT / "docs/schemas/e2e_config.schema.v1.json"

ENV_PREFIX = "E2E_"
ENV_REF_PREFIX = "env:"
ENV_ALIASES = {
    "E2E_HOST_URL": ("host", "url"),
    "E2E_API_KEY": ("host", "apiKey"),
    "E2E_CONTAINER": ("host", "container"),
}

GATE_ORDER = (
    "Schema",
    "Search",
    "AlbumSearch",
    "Grab",
    "Metadata",
    "ImportList",
    "Persistence",
    "AuthFailure",
)


class ConfigError(ValueError):
    pass


@dataclass
class HostConfig:
    url: str
    api_key: str
    container: str | None = None
    container_cli: str = "docker"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass
class PluginConfig:
    name: str
    implementations: dict[str, str | None]
    component_names: dict[str, str] = field(default_factory=dict)
    fields: dict[str, dict[str, Any]] = field(default_factory=dict)
    prerequisites: dict[str, Requirement] = field(default_factory=dict)

    def component_name(self, kind: str) -> str:
        return self.component_names.get(kind) or f"{self.name} E2E"

    def field_values(self, kind: str | None = None) -> dict[str, Any]:
        if kind is not None:
            return dict(self.fields.get(kind, {}))
        merged: dict[str, Any] = {}
        for values in self.fields.values():
            merged.update(values)
        return merged


@dataclass
class GatesConfig:
    enabled: list[str]
    timeouts_seconds: dict[str, int] = field(default_factory=dict)
    default_timeout_seconds: int = 300
    poll_interval_seconds: float = 2.0

    def timeout_for(self, gate: str) -> int:
        value = self.timeouts_seconds.get(gate)
        if isinstance(value, int) and value > 0:
            return value
        return self.default_timeout_seconds


@dataclass
class AlbumSearchConfig:
    album_id: int | None = None
    size_policy: str = "desc"
    command_timeout_seconds: float = 120.0


@dataclass
class GrabConfig:
    queue_timeout_seconds: float = 180.0
    download_timeout_seconds: float = 600.0
    download_path: str = "/downloads"
    audio_extensions: list[str] = field(default_factory=lambda: [".flac", ".mp3", ".m4a"])


@dataclass
class MetadataConfig:
    required_tags: list[str] = field(default_factory=lambda: ["artist", "album", "title"])
    probe_command: list[str] = field(
        default_factory=lambda: ["ffprobe", "-v", "quiet", "-print_format", "json", "-show_format"]
    )


@dataclass
class ImportListConfig:
    sync_timeout_seconds: float = 120.0


@dataclass
class AuthFailureConfig:
    mode: str = "401"
    probe_url: str | None = None
    invalid_api_key: str = "e2e-invalid-api-key"


@dataclass
class PersistenceConfig:
    restart_timeout_seconds: float = 120.0


@dataclass
class DriftConfig:
    enabled: bool = True
    contracts_path: str = "data/config/drift_contracts.v1.json"
    strict: bool = False


@dataclass
class E2EConfig:
    host: HostConfig
    plugin: PluginConfig
    gates: GatesConfig
    album_search: AlbumSearchConfig = field(default_factory=AlbumSearchConfig)
    grab: GrabConfig = field(default_factory=GrabConfig)
    metadata: MetadataConfig = field(default_factory=MetadataConfig)
    import_list: ImportListConfig = field(default_factory=ImportListConfig)
    auth_failure: AuthFailureConfig = field(default_factory=AuthFailureConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    drift: DriftConfig = field(default_factory=DriftConfig)
    sources: dict[str, Any] = field(default_factory=dict)

    def effective(self) -> dict[str, Any]:
        """What the run actually used, with field names but no field values."""
        return {
            "hostConfigured": bool(self.host.url),
            "apiKeyConfigured": has_value(self.host.api_key),
            "container": self.host.container,
            "plugin": self.plugin.name,
            "implementations": dict(self.plugin.implementations),
            "configuredFields": {
                kind: sorted(name for name, value in values.items() if has_value(value))
                for kind, values in self.plugin.fields.items()
            },
            "gates": list(self.gates.enabled),
            "gateTimeoutsSeconds": {gate: self.gates.timeout_for(gate) for gate in self.gates.enabled},
            "albumId": self.album_search.album_id,
            "sizePolicy": self.album_search.size_policy,
            "authFailureMode": self.auth_failure.mode,
            "driftEnabled": self.drift.enabled,
            "driftStrict": self.drift.strict,
        }


def _parse_env_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _match_key(container: dict[str, Any], wanted: str) -> str:
    normalized = wanted.replace("_", "").lower()
    for key in container:
        if key.replace("_", "").lower() == normalized:
            return key
    # unknown keys keep camelCase shape: API_KEY -> apiKey
    head, *rest = wanted.lower().split("_")
    return head + "".join(part.capitalize() for part in rest)


def apply_env_overlay(payload: dict[str, Any], environ: Mapping[str, str]) -> tuple[dict[str, Any], list[str]]:
    """Overlay environment variables; returns the new payload and the overlaid variable names."""
    out = copy.deepcopy(payload)
    applied: list[str] = []
    for name in sorted(environ):
        if name in ENV_ALIASES:
            section, key = ENV_ALIASES[name]
        elif name.startswith(ENV_PREFIX) and "__" in name:
            section_raw, key_raw = name[len(ENV_PREFIX):].split("__", 1)
            if not section_raw or not key_raw:
                continue
            section = _match_key(out, section_raw)
            if section not in out:
                continue
            key = key_raw
        else:
            continue
        target = out.setdefault(section, {})
        if not isinstance(target, dict):
            raise ConfigError(f"{name}: config section {section} is not an object")
        resolved_key = _match_key(target, key)
        # string-typed settings stay strings even when they look numeric
        if isinstance(target.get(resolved_key), str):
            target[resolved_key] = environ[name]
        else:
            target[resolved_key] = _parse_env_value(environ[name])
        applied.append(name)
    return out, applied


def resolve_env_refs(value: Any, environ: Mapping[str, str], unresolved: list[str]) -> Any:
    if isinstance(value, dict):
        return {key: resolve_env_refs(item, environ, unresolved) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_refs(item, environ, unresolved) for item in value]
    if isinstance(value, str) and value.startswith(ENV_REF_PREFIX):
        name = value[len(ENV_REF_PREFIX):].strip()
        resolved = environ.get(name, "")
        if not resolved and name not in unresolved:
            unresolved.append(name)
        return resolved
    return value


def _int_or_none(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def config_from_dict(
    payload: dict[str, Any],
    environ: Mapping[str, str] | None = None,
    *,
    schema: dict[str, Any] | None = None,
    source_path: Path | None = None,
) -> E2EConfig:
    env = os.environ if environ is None else environ
    overlaid, overlay_keys = apply_env_overlay(payload, env)
    if schema is None and CONFIG_SCHEMA_PATH.exists():
        schema = read_json(CONFIG_SCHEMA_PATH)
    if schema is not None:
        errors = schema_errors(overlaid, schema)
        if errors:
            raise ConfigError("invalid e2e config: " + "; ".join(errors))

    unresolved: list[str] = []
    data = resolve_env_refs(overlaid, env, unresolved)

    host = data.get("host", {})
    plugin = data.get("plugin", {})
    gates = data.get("gates", {})
    album = data.get("albumSearch", {})
    grab = data.get("grab", {})
    metadata = data.get("metadata", {})
    import_list = data.get("importList", {})
    auth = data.get("authFailure", {})
    persistence = data.get("persistence", {})
    drift = data.get("drift", {})

    enabled = [str(item) for item in gates.get("enabled", GATE_ORDER)]
    unknown = [gate for gate in enabled if gate not in GATE_ORDER]
    if unknown:
        raise ConfigError(f"unknown gates enabled: {', '.join(unknown)}")

    config = E2EConfig(
        host=HostConfig(
            url=str(host.get("url", "")),
            api_key=str(host.get("apiKey", "") or ""),
            container=host.get("container") or None,
            container_cli=str(host.get("containerCli", "docker")),
            request_timeout_seconds=float(host.get("requestTimeoutSeconds", 30)),
            max_retries=int(host.get("maxRetries", 3)),
        ),
        plugin=PluginConfig(
            name=str(plugin.get("name", "")),
            implementations=dict(plugin.get("implementations", {})),
            component_names=dict(plugin.get("componentNames", {})),
            fields={kind: dict(values) for kind, values in plugin.get("fields", {}).items()},
            prerequisites={
                gate: Requirement.from_config(requirement)
                for gate, requirement in plugin.get("prerequisites", {}).items()
            },
        ),
        gates=GatesConfig(
            enabled=[gate for gate in GATE_ORDER if gate in enabled],
            timeouts_seconds=dict(gates.get("timeoutsSeconds", {})),
            default_timeout_seconds=int(gates.get("defaultTimeoutSeconds", 300)),
            poll_interval_seconds=float(gates.get("pollIntervalSeconds", 2)),
        ),
        album_search=AlbumSearchConfig(
            album_id=_int_or_none(album.get("albumId")),
            size_policy=str(album.get("sizePolicy", "desc")),
            command_timeout_seconds=float(album.get("commandTimeoutSeconds", 120)),
        ),
        grab=GrabConfig(
            queue_timeout_seconds=float(grab.get("queueTimeoutSeconds", 180)),
            download_timeout_seconds=float(grab.get("downloadTimeoutSeconds", 600)),
            download_path=str(grab.get("downloadPath", "/downloads")),
            audio_extensions=[str(item).lower() for item in grab.get("audioExtensions", [".flac", ".mp3", ".m4a"])],
        ),
        metadata=MetadataConfig(
            required_tags=[str(item) for item in metadata.get("requiredTags", ["artist", "album", "title"])],
            probe_command=[str(item) for item in metadata.get("probeCommand", MetadataConfig().probe_command)],
        ),
        import_list=ImportListConfig(
            sync_timeout_seconds=float(import_list.get("syncTimeoutSeconds", 120)),
        ),
        auth_failure=AuthFailureConfig(
            mode=str(auth.get("mode", "401")),
            probe_url=auth.get("probeUrl") or None,
            invalid_api_key=str(auth.get("invalidApiKey", "e2e-invalid-api-key")),
        ),
        persistence=PersistenceConfig(
            restart_timeout_seconds=float(persistence.get("restartTimeoutSeconds", 120)),
        ),
        drift=DriftConfig(
            enabled=bool(drift.get("enabled", True)),
            contracts_path=str(drift.get("contractsPath", "data/config/drift_contracts.v1.json")),
            strict=bool(drift.get("strict", False)),
        ),
    )
    if not config.host.url:
        raise ConfigError("host.url is required")
    if not config.plugin.name:
        raise ConfigError("plugin.name is required")

    config.sources = {
        "configPath": str(source_path) if source_path is not None else None,
        "configHash": canonical_json_hash(payload),
        "envOverlayKeys": overlay_keys,
        "unresolvedEnvRefs": unresolved,
    }
    return config


def load_config(path: Path = DEFAULT_CONFIG_PATH, environ: Mapping[str, str] | None = None) -> E2EConfig:
    try:
        payload = read_json(path)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    return config_from_dict(payload, environ, source_path=path)
