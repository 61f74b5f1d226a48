from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path

from lapse_core.errors import ConfigError

ENCODINGS = ("separator", "tuple")
TIERS = ("memory", "sqlite", "redis")


def _load_toml(path: Path) -> dict:
    """Load a TOML file, returning empty dict if missing."""
    if not path.exists():
        return {}
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into base (1 level deep for TOML sections)."""
    merged = dict(base)
    for key, val in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(val, dict)
        ):
            merged[key] = {**merged[key], **val}
        else:
            merged[key] = val
    return merged


@dataclass(frozen=True, slots=True)
class TTLConfig:
    """Expiry behaviour of a :class:`~lapse_runtime.TTLStore`.

    Durations are in milliseconds. ``namespace=None`` resolves to ``"ttl"``
    when metadata shares the data store and to ``""`` when it lives in a
    dedicated sub-store.
    """
    default_ttl_ms: int = 0
    check_frequency_ms: int = 10_000
    namespace: str | None = None
    expiry_namespace: str = "x"
    method_prefix: str = ""
    separator: str = "!"
    ttl_encoding: str = "separator"

    def __post_init__(self) -> None:
        if self.default_ttl_ms < 0:
            raise ConfigError("default_ttl_ms must be >= 0")
        if self.check_frequency_ms <= 0:
            raise ConfigError("check_frequency_ms must be > 0")
        if not self.separator:
            raise ConfigError("separator must not be empty")
        if not self.expiry_namespace:
            raise ConfigError("expiry_namespace must not be empty")
        if self.ttl_encoding not in ENCODINGS:
            raise ConfigError(
                f"Unknown ttl_encoding {self.ttl_encoding!r}; "
                f"expected one of {', '.join(ENCODINGS)}"
            )

    def resolved_namespace(self, has_sub: bool) -> str:
        if self.namespace is not None:
            return self.namespace
        return "" if has_sub else "ttl"


@dataclass(frozen=True, slots=True)
class BackendConfig:
    tier: str = "memory"
    sqlite_path: str = ".lapse/lapse.db"
    sqlite_table: str = "kv"
    redis_url: str = "redis://localhost:6379"
    redis_prefix: str = "lapse:"
    metadata_sublevel: str | None = None


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    level: str = "INFO"
    json_output: bool = False


@dataclass(frozen=True, slots=True)
class LapseConfig:
    """Top-level configuration, parsed from lapse.toml."""
    ttl: TTLConfig = field(default_factory=TTLConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_toml(
        cls, path: Path | str = "lapse.toml"
    ) -> LapseConfig:
        path = Path(path)
        raw = _load_toml(path)
        return cls._from_raw(raw)

    @classmethod
    def load(
        cls, project_dir: Path | str | None = None
    ) -> LapseConfig:
        """Load config with global → project layering.

        Resolution order (later wins):
        1. Built-in defaults
        2. ~/.lapse/config.toml (global)
        3. .lapse/config.toml or lapse.toml (project)
        """
        global_path = Path.home() / ".lapse" / "config.toml"

        project_dir = (
            Path.cwd() if project_dir is None else Path(project_dir)
        )

        project_path = project_dir / ".lapse" / "config.toml"
        if not project_path.exists():
            project_path = project_dir / "lapse.toml"

        merged = _deep_merge(
            _load_toml(global_path), _load_toml(project_path)
        )
        return cls._from_raw(merged)

    def with_ttl(self, **changes) -> LapseConfig:
        """Return a copy with selected ``[ttl]`` options replaced."""
        return replace(self, ttl=replace(self.ttl, **changes))

    @classmethod
    def _from_raw(cls, raw: dict) -> LapseConfig:
        """Build LapseConfig from a raw TOML dict."""

        def _pick(section: dict, dc: type) -> dict:
            fields = dc.__dataclass_fields__
            return {
                k: v for k, v in section.items() if k in fields
            }

        backend = BackendConfig(
            **_pick(raw.get("backend", {}), BackendConfig)
        )
        if backend.tier not in TIERS:
            raise ConfigError(
                f"Unknown backend tier {backend.tier!r}; "
                f"expected one of {', '.join(TIERS)}"
            )

        return cls(
            ttl=TTLConfig(**_pick(raw.get("ttl", {}), TTLConfig)),
            backend=backend,
            logging=LoggingConfig(
                **_pick(raw.get("logging", {}), LoggingConfig)
            ),
        )
