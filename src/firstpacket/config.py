# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Orchestrator configuration.

Defaults mirror a typical Go/HTMX project layout.  Every field can be
overridden through ``FIRSTPACKET_*`` environment variables via
:meth:`OrchestratorConfig.from_env`.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from . import DEFAULT_CHUNK_SIZE, MAX_CRITICAL_CSS, MAX_FIRST_PACKET_SIZE
from .errors import ConfigError

DEFAULT_EXTENSIONS = (".css", ".js", ".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg")
DEFAULT_CRITICAL_PATTERNS = (
    "critical.css",
    "main.css",
    "base.css",
    "critical.js",
    "htmx",
    "logo",
    "hero",
    "favicon",
)

_ALGORITHMS = ("gzip", "brotli")
_DIR_FIELDS = ("static_dir", "templates_dir", "output_dir", "cache_dir")

# Fields that change build output.  Timing and lifecycle knobs are excluded
# so toggling them never invalidates cached artifacts.
_CACHE_FIELDS = (
    "critical_budget",
    "critical_css_budget",
    "chunk_size",
    "extensions",
    "critical_patterns",
    "compression_algorithm",
    "compression_level",
    "minify",
    "critical_css_placeholder",
)


@dataclass(frozen=True, slots=True)
class OrchestratorConfig:
    """Recognized build options."""

    static_dir: str = "web/static"
    templates_dir: str = "templates"
    output_dir: str = "web/static/dist"
    cache_dir: str = ".cache/optimization"
    enable_build_cache: bool = True
    watch_mode: bool = False
    watch_interval: float = 2.0
    build_timeout: float = 300.0
    parallel_stages: bool = True
    validate_compliance: bool = True
    critical_budget: int = MAX_FIRST_PACKET_SIZE
    critical_css_budget: int = MAX_CRITICAL_CSS
    chunk_size: int = DEFAULT_CHUNK_SIZE
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    critical_patterns: tuple[str, ...] = DEFAULT_CRITICAL_PATTERNS
    compression_algorithm: str = "brotli"
    compression_level: int = 6
    minify: bool = True
    cache_busting: bool = True
    cache_ttl: float = 3600.0
    cache_max_entries: int = 128
    cache_sweep_interval: float = 60.0
    critical_css_placeholder: str = "<!-- critical-css -->"

    def __post_init__(self) -> None:
        if self.critical_budget <= 0:
            raise ConfigError(f"critical_budget must be positive, got {self.critical_budget}")
        if self.critical_css_budget < 0:
            raise ConfigError(f"critical_css_budget must be >= 0, got {self.critical_css_budget}")
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.build_timeout <= 0:
            raise ConfigError(f"build_timeout must be positive, got {self.build_timeout}")
        if self.watch_interval <= 0:
            raise ConfigError(f"watch_interval must be positive, got {self.watch_interval}")
        if self.cache_ttl <= 0:
            raise ConfigError(f"cache_ttl must be positive, got {self.cache_ttl}")
        if self.cache_max_entries < 1:
            raise ConfigError(f"cache_max_entries must be >= 1, got {self.cache_max_entries}")
        if self.compression_algorithm not in _ALGORITHMS:
            raise ConfigError(
                f"compression_algorithm must be one of {', '.join(_ALGORITHMS)}, got {self.compression_algorithm!r}"
            )
        bad = [ext for ext in self.extensions if not ext.startswith(".")]
        if bad:
            raise ConfigError(f"extensions must start with '.': {bad}")

    # -- Derived views --

    @property
    def reports_dir(self) -> Path:
        return Path(self.output_dir) / "reports"

    def cache_fields(self) -> dict[str, Any]:
        """Config subset that affects build output (cache-key input)."""
        return {name: getattr(self, name) for name in _CACHE_FIELDS}

    def under(self, root: str | os.PathLike[str]) -> OrchestratorConfig:
        """Return a copy with relative directories rebased on *root*."""
        base = Path(root)
        changes = {}
        for name in _DIR_FIELDS:
            value = Path(getattr(self, name))
            if not value.is_absolute():
                changes[name] = str(base / value)
        return dataclasses.replace(self, **changes)

    # -- Environment --

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, **overrides: Any) -> OrchestratorConfig:
        """Build a config from ``FIRSTPACKET_<FIELD>`` variables.

        Explicit *overrides* win over the environment.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            raw = env.get(f"FIRSTPACKET_{f.name.upper()}", "").strip()
            if not raw:
                continue
            values[f.name] = _coerce(f.name, f.type, raw)
        values.update(overrides)
        return cls(**values)


def _coerce(name: str, type_name: Any, raw: str) -> Any:
    """Convert an env string using the dataclass field's annotation."""
    type_name = str(type_name)
    try:
        if type_name == "bool":
            lowered = raw.lower()
            if lowered in ("1", "true", "yes", "on"):
                return True
            if lowered in ("0", "false", "no", "off"):
                return False
            raise ValueError(raw)
        if type_name == "int":
            return int(raw)
        if type_name == "float":
            return float(raw)
        if type_name.startswith("tuple"):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
    except ValueError:
        raise ConfigError(f"FIRSTPACKET_{name.upper()}: cannot parse {raw!r} as {type_name}") from None
    return raw
