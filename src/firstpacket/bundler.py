# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Bundle building under the first-packet budget.

Assets are partitioned by (type, critical):

  css  critical  → critical.css      css  other → extended.css
  js   critical  → critical.js       js   other → app.js
  img  critical  → critical-images   img  other → lazy-images

A critical bundle whose *compressed* size exceeds the critical budget keeps
assets greedily in priority order while the compressed total still fits and
drops the rest; every drop is recorded as a compliance violation.  A
non-critical bundle larger than the chunk size is split into numbered
chunks in encounter order, so the same input order always yields the same
chunk boundaries.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from . import Asset, AssetType, Bundle
from .catalog import asset_priority
from .compressor import Compressor
from .config import OrchestratorConfig
from .critical_css import minify_css

logger = logging.getLogger(__name__)

_BUNDLE_SPECS: dict[tuple[AssetType, bool], tuple[str, str, int]] = {
    # (type, critical): (stem, extension, load priority)
    (AssetType.CSS, True): ("critical", ".css", 100),
    (AssetType.CSS, False): ("extended", ".css", 50),
    (AssetType.JS, True): ("critical", ".js", 100),
    (AssetType.JS, False): ("app", ".js", 75),
    (AssetType.IMAGE, True): ("critical-images", "", 90),
    (AssetType.IMAGE, False): ("lazy-images", "", 25),
}
_CHUNK_PRIORITY_STEP = 5
_MANIFEST_NAME = "manifest.json"


class SizeCompressor(Protocol):
    def compressed_size(self, data: bytes) -> int: ...


# ---------------------------------------------------------------------------
# Minification
# ---------------------------------------------------------------------------


def minify_js(js: str) -> str:
    """Line-level JS minification: trim lines, drop blanks and ``//`` comment lines.

    Lines stay newline-separated so automatic semicolon insertion still holds.
    """
    lines = (line.strip() for line in js.splitlines())
    return "\n".join(line for line in lines if line and not line.startswith("//"))


def _separator(asset_type: AssetType) -> bytes:
    """Bytes placed between assets when a bundle is concatenated."""
    if asset_type is AssetType.JS:
        return b";\n"
    if asset_type is AssetType.CSS:
        return b"\n"
    return b""


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def split_chunks(
    assets: Sequence[Asset],
    chunk_size: int,
    *,
    size_of: Callable[[Asset], int] | None = None,
    separator: int = 0,
) -> list[list[Asset]]:
    """Split *assets* into consecutive chunks of at most *chunk_size* bytes.

    A chunk's size is the sum of ``size_of(asset)`` (raw ``asset.size`` by
    default) plus *separator* bytes between neighbours, i.e. the length of
    the concatenated chunk.  Encounter order is preserved.  An asset larger
    than *chunk_size* on its own gets a chunk to itself.
    """
    measure = size_of or (lambda a: a.size)
    chunks: list[list[Asset]] = []
    current: list[Asset] = []
    current_size = 0
    for asset in assets:
        size = measure(asset)
        if current and current_size + separator + size > chunk_size:
            chunks.append(current)
            current = []
            current_size = 0
        if current:
            current_size += separator
        current.append(asset)
        current_size += size
    if current:
        chunks.append(current)
    return chunks


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BundleSet:
    """Bundles from one build plus the compliance findings it produced."""

    bundles: dict[str, Bundle] = field(default_factory=dict)
    violations: tuple[str, ...] = ()
    # Critical bundles that dropped assets (or were omitted) to fit the budget.
    trimmed: tuple[str, ...] = ()

    def __getitem__(self, name: str) -> Bundle:
        return self.bundles[name]

    def __contains__(self, name: object) -> bool:
        return name in self.bundles

    def __iter__(self) -> Iterator[str]:
        return iter(self.bundles)

    def __len__(self) -> int:
        return len(self.bundles)

    def values(self):
        return self.bundles.values()

    def critical(self) -> list[Bundle]:
        return [b for b in self.bundles.values() if b.critical]

    @property
    def asset_count(self) -> int:
        return sum(len(b.assets) for b in self.bundles.values())

    @property
    def total_uncompressed(self) -> int:
        return sum(b.uncompressed_size for b in self.bundles.values())

    @property
    def total_compressed(self) -> int:
        return sum(b.compressed_size for b in self.bundles.values())


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class BundleBuilder:
    """Group catalog assets into bundles.

    Args:
        config: budget, chunk size, compression and minification settings.
        compressor: anything with ``compressed_size(bytes) -> int``;
            defaults to the configured algorithm/level.
        loader: returns an asset's bytes; defaults to reading from
            ``config.static_dir``.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        compressor: SizeCompressor | None = None,
        loader: Callable[[Asset], bytes] | None = None,
    ) -> None:
        self._config = config
        self._compressor = compressor or Compressor(config.compression_algorithm, config.compression_level)
        self._loader = loader or self._read_from_static_dir

    def _read_from_static_dir(self, asset: Asset) -> bytes:
        return (Path(self._config.static_dir) / asset.path).read_bytes()

    def build(self, assets: Sequence[Asset]) -> BundleSet:
        """Partition *assets* and build every bundle."""
        partitions: dict[tuple[AssetType, bool], list[Asset]] = {}
        for asset in assets:
            key = (asset.type, asset.critical)
            if key not in _BUNDLE_SPECS:
                logger.debug("Not bundling %s (type=%s)", asset.path, asset.type)
                continue
            partitions.setdefault(key, []).append(asset)

        prepared: dict[str, bytes] = {}
        bundles: dict[str, Bundle] = {}
        violations: list[str] = []
        trimmed: list[str] = []

        def prepared_size(asset: Asset) -> int:
            return len(self._prepare(asset, prepared))

        for key in _BUNDLE_SPECS:  # fixed partition order
            members = partitions.get(key)
            if not members:
                continue
            asset_type, critical = key
            stem, ext, priority = _BUNDLE_SPECS[key]
            name = f"{stem}{ext}"

            if critical:
                bundle = self._build_critical(name, asset_type, priority, members, prepared, violations)
                if bundle is None or len(bundle.assets) < len(members):
                    trimmed.append(name)
                if bundle is not None:
                    bundles[name] = bundle
                continue

            separator = len(_separator(asset_type))
            sizes = [prepared_size(a) for a in members]
            if sum(sizes) + separator * (len(members) - 1) <= self._config.chunk_size:
                bundles[name] = self._make_bundle(name, asset_type, False, priority, members, prepared)
                continue

            chunks = split_chunks(members, self._config.chunk_size, size_of=prepared_size, separator=separator)
            for index, chunk in enumerate(chunks):
                chunk_name = f"{stem}-{index}{ext}"
                if len(chunk) == 1 and prepared_size(chunk[0]) > self._config.chunk_size:
                    logger.warning(
                        "Asset %s (%d bytes) exceeds chunk size %d; placed alone in %s",
                        chunk[0].path,
                        prepared_size(chunk[0]),
                        self._config.chunk_size,
                        chunk_name,
                    )
                bundles[chunk_name] = self._make_bundle(
                    chunk_name, asset_type, False, priority - _CHUNK_PRIORITY_STEP, chunk, prepared
                )
            logger.debug("Split %s into %d chunks", name, len(chunks))

        result = BundleSet(bundles=bundles, violations=tuple(violations), trimmed=tuple(trimmed))
        logger.info(
            "Built %d bundles from %d assets (%d violations)",
            len(bundles),
            result.asset_count,
            len(violations),
        )
        return result

    # -- Critical budget --

    def _build_critical(
        self,
        name: str,
        asset_type: AssetType,
        priority: int,
        members: list[Asset],
        prepared: dict[str, bytes],
        violations: list[str],
    ) -> Bundle | None:
        budget = self._config.critical_budget
        bundle = self._make_bundle(name, asset_type, True, priority, members, prepared)
        if bundle.compressed_size <= budget:
            return bundle

        logger.warning(
            "Critical bundle %s is %d bytes compressed (budget %d); dropping lowest-priority assets",
            name,
            bundle.compressed_size,
            budget,
        )
        # Stable sort: equal priorities keep encounter order.
        ranked = sorted(members, key=lambda a: -asset_priority(a))
        kept: set[str] = set()
        fitted: Bundle | None = None
        for asset in ranked:
            trial_paths = kept | {asset.path}
            # Concatenate in encounter order so cascade order is unchanged.
            trial = [a for a in members if a.path in trial_paths]
            candidate = self._make_bundle(name, asset_type, True, priority, trial, prepared)
            if candidate.compressed_size > budget:
                break
            kept = trial_paths
            fitted = candidate

        for asset in ranked:
            if asset.path not in kept:
                violations.append(
                    f"{name}: dropped {asset.path} (priority {asset_priority(asset)}, {asset.size} bytes) "
                    f"to fit {budget}-byte critical budget"
                )
        if fitted is None:
            violations.append(f"{name}: no asset fits the {budget}-byte critical budget; bundle omitted")
            return None
        logger.info(
            "Critical bundle %s trimmed to %d/%d assets, %d bytes compressed",
            name,
            len(fitted.assets),
            len(members),
            fitted.compressed_size,
        )
        return fitted

    # -- Bundle assembly --

    def _prepare(self, asset: Asset, prepared: dict[str, bytes]) -> bytes:
        cached = prepared.get(asset.path)
        if cached is not None:
            return cached
        raw = self._loader(asset)
        if self._config.minify and asset.type is AssetType.CSS:
            data = minify_css(raw.decode("utf-8", errors="replace")).encode("utf-8")
        elif self._config.minify and asset.type is AssetType.JS:
            data = minify_js(raw.decode("utf-8", errors="replace")).encode("utf-8")
        else:
            data = raw
        prepared[asset.path] = data
        return data

    def _concat(self, asset_type: AssetType, assets: Sequence[Asset], prepared: dict[str, bytes]) -> bytes:
        return _separator(asset_type).join(self._prepare(a, prepared) for a in assets)

    def _make_bundle(
        self,
        name: str,
        asset_type: AssetType,
        critical: bool,
        priority: int,
        assets: Sequence[Asset],
        prepared: dict[str, bytes],
    ) -> Bundle:
        content = self._concat(asset_type, assets, prepared)
        return Bundle(
            name=name,
            type=asset_type,
            assets=tuple(assets),
            critical=critical,
            uncompressed_size=len(content),
            compressed_size=self._compressor.compressed_size(content),
            content_hash=hashlib.sha256(content).hexdigest(),
            load_priority=priority,
            created_at=datetime.now(UTC),
            content=content,
        )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def write_bundles(bundle_set: BundleSet, output_dir: str | Path, cache_busting: bool = True) -> dict:
    """Write CSS/JS bundle files and ``manifest.json`` into *output_dir*.

    Returns the manifest mapping bundle name to file and size metadata.
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    manifest: dict[str, dict] = {}
    for name, bundle in sorted(bundle_set.bundles.items()):
        entry = {
            "type": bundle.type.value,
            "critical": bundle.critical,
            "assets": [a.path for a in bundle.assets],
            "uncompressed_size": bundle.uncompressed_size,
            "compressed_size": bundle.compressed_size,
            "load_priority": bundle.load_priority,
            "hash": bundle.content_hash,
            "file": None,
        }
        if bundle.writable:
            filename = bundle.filename(cache_busting)
            (out / filename).write_bytes(bundle.content)
            entry["file"] = filename
        manifest[name] = entry
    (out / _MANIFEST_NAME).write_text(json.dumps(manifest, indent=2, sort_keys=True), encoding="utf-8")
    logger.info("Wrote %d bundle files to %s", sum(1 for e in manifest.values() if e["file"]), out)
    return manifest


def preload_hints(bundle_set: BundleSet, url_prefix: str = "/static/dist", cache_busting: bool = True) -> list[str]:
    """``<link rel="preload">`` tags for critical CSS/JS bundles, highest priority first."""
    hints: list[str] = []
    ordered = sorted(bundle_set.critical(), key=lambda b: (-b.load_priority, b.name))
    for bundle in ordered:
        if not bundle.writable:
            continue
        kind = "style" if bundle.type is AssetType.CSS else "script"
        href = f"{url_prefix.rstrip('/')}/{bundle.filename(cache_busting)}"
        hints.append(f'<link rel="preload" href="{href}" as="{kind}">')
    return hints
