# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import firstpacket  # noqa: F401
except ImportError:
    raise ImportError("firstpacket is not installed. Run: pip install -e '.[dev]'") from None

import logging
from pathlib import Path

import pytest
import structlog

from firstpacket.config import OrchestratorConfig
from tests._helpers import BASE_HTML, MAIN_CSS, write_file


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Small Go/HTMX-style project tree: web/static + templates."""
    static = tmp_path / "web" / "static"
    write_file(static, "css/main.css", MAIN_CSS)
    write_file(static, "css/extra.css", ".sidebar { width: 200px; }\n.pagination { display: flex; }\n")
    write_file(static, "js/htmx.min.js", "// htmx\nwindow.htmx = {};\n")
    write_file(static, "js/app.js", "// app\nconsole.log('app');\n")
    write_file(static, "img/logo.png", b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
    write_file(static, "img/photo.jpg", b"\xff\xd8\xff" + b"\x01" * 256)
    write_file(static, "README.txt", "not an asset")
    write_file(tmp_path / "templates", "layout/base.html", BASE_HTML)
    write_file(tmp_path / "templates", "pages/index.html", "<div class='card'>\n  <p>Hi</p>\n</div>\n")
    return tmp_path


@pytest.fixture
def config(project: Path) -> OrchestratorConfig:
    return OrchestratorConfig().under(project)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Keep structlog/stdlib logging state from leaking between tests."""
    root = logging.getLogger()
    old_handlers = root.handlers[:]
    old_level = root.level
    yield
    root.handlers = old_handlers
    root.setLevel(old_level)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
