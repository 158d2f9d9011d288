# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge for build logs.

Leaf module with no firstpacket imports.  Modules log through plain
``logging.getLogger(__name__)``; :func:`configure` renders every record,
ours and foreign, through one structlog pipeline on stderr.

Console output prefixes each build's lines with ``[build_id]``; JSON
output (``--json-logs``) keeps ``build_id`` as a field for log shipping.
"""

from __future__ import annotations

import contextlib
import logging
import os
import sys
from collections.abc import Iterator
from typing import IO

import structlog

LOG_LEVEL_ENV = "FIRSTPACKET_LOG_LEVEL"

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _resolve_level(level: str | None) -> int:
    """Explicit *level*, else ``FIRSTPACKET_LOG_LEVEL``, else INFO."""
    name = (level or os.environ.get(LOG_LEVEL_ENV) or "INFO").upper()
    if name not in _LEVELS:
        raise ValueError(f"Unknown log level {name!r} (expected one of {', '.join(_LEVELS)})")
    return getattr(logging, name)


def _prefix_build_id(logger, method_name: str, event_dict: dict) -> dict:
    build_id = event_dict.pop("build_id", None)
    if build_id:
        event_dict["event"] = f"[{build_id}] {event_dict.get('event', '')}"
    return event_dict


def configure(*, json_output: bool = False, level: str | None = None, stream: IO[str] | None = None) -> None:
    """Route stdlib logging through structlog's ProcessorFormatter.

    Args:
        json_output: JSON lines instead of the human-readable console format.
        level: root level name; ``FIRSTPACKET_LOG_LEVEL`` or INFO when omitted.
        stream: destination (default ``sys.stderr``, keeping stdout for reports).

    Raises:
        ValueError: unknown level name.
    """
    root_level = _resolve_level(level)
    shared: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        render: list = [structlog.processors.JSONRenderer()]
    else:
        render = [_prefix_build_id, structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *render],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)


@contextlib.contextmanager
def bound_build(build_id: str) -> Iterator[None]:
    """Attach ``build_id`` to every log line emitted inside the block.

    Context variables are copied into tasks and ``asyncio.to_thread`` workers,
    so stage logs carry the id too.
    """
    with structlog.contextvars.bound_contextvars(build_id=build_id):
        yield
