"""Optional SSE debug logging for upstream traffic."""
from __future__ import annotations

import logging
import time
from typing import Callable, Mapping, Optional

from .config import ProxySettings

logger = logging.getLogger(__name__)

DebugWriter = Callable[[str], None]

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _toggle(value: Optional[str], enabled: bool) -> bool:
    if not isinstance(value, str):
        return enabled
    v = value.strip().lower()
    if v in _TRUTHY:
        return True
    if v in _FALSY:
        return False
    return enabled


def make_debugger(
    settings: Optional[ProxySettings],
    query: Mapping[str, str],
    headers: Mapping[str, str],
) -> Optional[DebugWriter]:
    """Compose a debug writer honoring settings with per-request overrides."""

    enabled = bool(getattr(settings, "debug_sse_enabled", False))
    path_value = getattr(settings, "debug_sse_path", "") if settings else ""
    path = path_value.strip() if isinstance(path_value, str) else ""

    # enable order: settings -> query param -> header
    enabled = _toggle(query.get("debug_sse") or query.get("debug"), enabled)
    enabled = _toggle(headers.get("x-debug-sse"), enabled)
    if not enabled:
        return None

    if path:
        def writer(line: str) -> None:
            try:
                with open(path, "a", encoding="utf-8") as f:
                    f.write(f"[{time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime())} UTC] {line}\n")
            except OSError as e:
                logger.debug("debug write failed: %s", e)
        return writer

    def writer_log(line: str) -> None:
        logger.debug("%s", line)

    return writer_log
