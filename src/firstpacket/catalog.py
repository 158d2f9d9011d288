# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Static asset discovery.

A scan walks the static root, keeps files whose extension is allow-listed,
and records size, sha256, critical flag and import dependencies for each.

Scans are not incremental.  The new catalog is built aside and published by
a single attribute swap, so concurrent readers see either the previous or
the new complete snapshot, never a partial one.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Iterable
from pathlib import Path, PurePosixPath

from . import Asset, AssetType
from .config import DEFAULT_CRITICAL_PATTERNS, DEFAULT_EXTENSIONS
from .errors import ScanError

logger = logging.getLogger(__name__)

_TYPE_BY_EXT = {
    ".css": AssetType.CSS,
    ".js": AssetType.JS,
    ".mjs": AssetType.JS,
    ".png": AssetType.IMAGE,
    ".jpg": AssetType.IMAGE,
    ".jpeg": AssetType.IMAGE,
    ".gif": AssetType.IMAGE,
    ".webp": AssetType.IMAGE,
    ".svg": AssetType.IMAGE,
    ".avif": AssetType.IMAGE,
}

_LARGE_ASSET_BYTES = 10 * 1024

# Dependency references (best effort, no real parsing)
_CSS_IMPORT_RE = re.compile(r"""@import\s+(?:url\(\s*)?["']?([^"')\s;]+)["']?\s*\)?""", re.IGNORECASE)
_JS_IMPORT_RE = re.compile(r"""(?:\bimport\s+(?:[^'";]+?\s+from\s+)?|\brequire\s*\(\s*)["']([^"']+)["']""")


def asset_type_for(path: str) -> AssetType:
    return _TYPE_BY_EXT.get(PurePosixPath(path).suffix.lower(), AssetType.OTHER)


def asset_priority(asset: Asset) -> int:
    """Heuristic load priority; higher is kept first under budget pressure."""
    priority = 50
    lowered = asset.path.lower()
    if "critical" in lowered:
        priority += 50
    if "main" in lowered or "base" in lowered:
        priority += 30
    if "htmx" in lowered:
        priority += 25
    if asset.size > _LARGE_ASSET_BYTES:
        priority -= 20
    return priority


def find_dependencies(path: str, content: bytes, asset_type: AssetType) -> tuple[str, ...]:
    """Return referenced paths (``@import`` / ``import`` / ``require``), resolved relative to *path*."""
    if asset_type is AssetType.CSS:
        pattern = _CSS_IMPORT_RE
    elif asset_type is AssetType.JS:
        pattern = _JS_IMPORT_RE
    else:
        return ()

    text = content.decode("utf-8", errors="replace")
    parent = PurePosixPath(path).parent
    deps: list[str] = []
    for ref in pattern.findall(text):
        if "://" in ref or ref.startswith("//") or ref.startswith("data:"):
            continue  # external
        if ref.startswith("/"):
            resolved = ref.lstrip("/")
        elif ref.startswith("."):
            resolved = os.path.normpath(str(parent / ref)).replace(os.sep, "/")
        else:
            continue  # bare module specifier
        if resolved not in deps:
            deps.append(resolved)
    return tuple(deps)


class AssetCatalog:
    """Catalog of static assets under one root.

    Critical classification is a case-insensitive substring match of the
    relative path against ``critical_patterns``.
    """

    def __init__(
        self,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        critical_patterns: Iterable[str] = DEFAULT_CRITICAL_PATTERNS,
    ) -> None:
        self._extensions = frozenset(ext.lower() for ext in extensions)
        self._critical_patterns = tuple(p.lower() for p in critical_patterns)
        self._assets: tuple[Asset, ...] = ()
        self._root: Path | None = None

    # -- Scan --

    def scan(self, root: str | os.PathLike[str], exclude: Iterable[str | os.PathLike[str]] = ()) -> None:
        """Walk *root* and replace the catalog.

        Directories in *exclude* (typically the build output directory
        nested under the static root) are not descended into.

        Raises:
            ScanError: *root* is missing or unreadable.  Unreadable files
                below it are logged and skipped.
        """
        root_path = Path(root)
        if not root_path.is_dir():
            raise ScanError(f"Static root is not a readable directory: {root_path}")
        try:
            os.listdir(root_path)
        except OSError as e:
            raise ScanError(f"Static root is not readable: {root_path}: {e}") from e

        excluded = _resolved(exclude)
        found: list[Asset] = []
        skipped = 0
        for dirpath, dirnames, filenames in os.walk(root_path, onerror=self._log_walk_error):
            _prune(dirpath, dirnames, excluded)
            for filename in sorted(filenames):
                full = Path(dirpath) / filename
                if full.suffix.lower() not in self._extensions:
                    continue
                rel = full.relative_to(root_path).as_posix()
                try:
                    asset = self._read_asset(full, rel)
                except OSError as e:
                    skipped += 1
                    logger.warning("Skipping unreadable asset %s: %s", rel, e)
                    continue
                found.append(asset)

        self._assets = tuple(found)
        self._root = root_path
        logger.info(
            "Catalog scan: root=%s assets=%d critical=%d skipped=%d",
            root_path,
            len(found),
            sum(1 for a in found if a.critical),
            skipped,
        )

    def _read_asset(self, full: Path, rel: str) -> Asset:
        content = full.read_bytes()
        stat = full.stat()
        asset_type = asset_type_for(rel)
        return Asset(
            path=rel,
            size=len(content),
            type=asset_type,
            critical=self.is_critical(rel),
            content_hash=hashlib.sha256(content).hexdigest(),
            last_modified=stat.st_mtime,
            dependencies=find_dependencies(rel, content, asset_type),
        )

    @staticmethod
    def _log_walk_error(err: OSError) -> None:
        logger.warning("Skipping unreadable directory %s: %s", err.filename, err)

    def is_critical(self, rel_path: str) -> bool:
        lowered = rel_path.lower()
        return any(pattern in lowered for pattern in self._critical_patterns)

    # -- Read access --

    def assets(self) -> tuple[Asset, ...]:
        """Read-only snapshot in deterministic (sorted walk) order."""
        return self._assets

    @property
    def root(self) -> Path | None:
        return self._root

    def get(self, rel_path: str) -> Asset | None:
        for asset in self._assets:
            if asset.path == rel_path:
                return asset
        return None

    def read(self, asset: Asset) -> bytes:
        """Load an asset's bytes from the scanned root."""
        if self._root is None:
            raise ScanError("Catalog has not been scanned")
        return (self._root / asset.path).read_bytes()

    @property
    def total_size(self) -> int:
        return sum(a.size for a in self._assets)

    def __len__(self) -> int:
        return len(self._assets)


def _resolved(paths: Iterable[str | os.PathLike[str]]) -> frozenset[Path]:
    return frozenset(Path(p).resolve() for p in paths)


def _prune(dirpath: str, dirnames: list[str], excluded: frozenset[Path]) -> None:
    """Sort *dirnames* in place (deterministic walk) and drop excluded ones."""
    dirnames[:] = sorted(d for d in dirnames if (Path(dirpath) / d).resolve() not in excluded)


def tree_fingerprint(*roots: str | os.PathLike[str], exclude: Iterable[str | os.PathLike[str]] = ()) -> str:
    """Cheap stat-only fingerprint of every file under *roots*.

    Changes whenever a file is added, removed, resized or touched.
    Missing roots contribute nothing.
    """
    excluded = _resolved(exclude)
    digest = hashlib.sha256()
    for root in roots:
        root_path = Path(root)
        if not root_path.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(root_path):
            _prune(dirpath, dirnames, excluded)
            for filename in sorted(filenames):
                full = Path(dirpath) / filename
                try:
                    stat = full.stat()
                except OSError:
                    continue
                digest.update(f"{full}\0{stat.st_size}\0{stat.st_mtime_ns}\n".encode())
    return digest.hexdigest()
