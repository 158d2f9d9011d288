# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared helper utilities for test files.

Underscore prefix prevents pytest collection.
Plain factories and stubs (not fixtures — conftest.py is reserved
for fixtures).
"""

from __future__ import annotations

import hashlib
from pathlib import Path

from firstpacket import Asset
from firstpacket.catalog import asset_type_for

BASE_HTML = """<!DOCTYPE html>
<html>
<head>
  <title>Recipes</title>
  <!-- critical-css -->
</head>
<body>
  <header class="site-header"><nav class="nav"><a class="logo" href="/">Home</a></nav></header>
  <main class="container">
    <h1 class="hero">Today</h1>
    <!-- list goes here -->
    <div class="card">Soup</div>
  </main>
</body>
</html>
"""

MAIN_CSS = """/* base styles */
html, body { margin: 0; padding: 0; }
.container { max-width: 960px; margin: 0 auto; }
.site-header { background: #ffffff; }
.card { border: 1px solid #cccccc; }
.footer { color: #333; }
.modal:hover { opacity: 0.5; }
"""


class RatioCompressor:
    """Compressor stub: compressed size is a fixed fraction of the input."""

    def __init__(self, ratio: float = 0.5) -> None:
        self.ratio = ratio
        self.calls = 0

    def compressed_size(self, data: bytes) -> int:
        self.calls += 1
        return int(len(data) * self.ratio)


def make_asset(path: str, size: int = 100, *, critical: bool = False, **overrides) -> Asset:
    defaults = {
        "path": path,
        "size": size,
        "type": asset_type_for(path),
        "critical": critical,
        "content_hash": hashlib.sha256(path.encode()).hexdigest(),
        "last_modified": 0.0,
    }
    defaults.update(overrides)
    return Asset(**defaults)


def sized_loader(assets: list[Asset], fill: bytes = b"a"):
    """Loader returning ``asset.size`` bytes of *fill* for each asset."""
    sizes = {a.path: a.size for a in assets}

    def load(asset: Asset) -> bytes:
        return fill * sizes.get(asset.path, asset.size)

    return load


def write_file(root: Path, rel: str, content: str | bytes) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path
