"""Entry points for launching the gateway via uvicorn."""
from __future__ import annotations

import argparse
import logging

import uvicorn

from .app import create_app
from .config import DEFAULT_AUTH_PATH, DEFAULT_DEBUG_PATH, DEFAULT_HOST, DEFAULT_PORT, ProxySettings
from .errors import AuthConfigError
from .store import _read_tokens

logger = logging.getLogger(__name__)


def _resolve_debug_settings(debug_arg: str | None, current_path: str | None) -> tuple[bool, str]:
    """Return debug enabled flag and chosen path based on CLI input."""

    if debug_arg is None:
        return False, current_path or DEFAULT_DEBUG_PATH

    candidate = debug_arg.strip()
    return True, candidate or current_path or DEFAULT_DEBUG_PATH


def _build_settings(args: argparse.Namespace) -> ProxySettings:
    """Construct ProxySettings from the environment, then apply CLI overrides."""

    settings = ProxySettings.from_env()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.auth_path:
        settings.auth_path = args.auth_path
    if args.redirect_prefix:
        settings.oauth_redirect_prefix = args.redirect_prefix

    if args.debug is not None:
        settings.debug_sse_enabled, settings.debug_sse_path = _resolve_debug_settings(
            args.debug, settings.debug_sse_path
        )
    elif settings.debug_sse_enabled and not settings.debug_sse_path:
        settings.debug_sse_path = DEFAULT_DEBUG_PATH
    return settings


def _log_configuration(settings: ProxySettings) -> None:
    """Emit a concise summary of the active configuration values."""

    debug_display = settings.debug_sse_path if settings.debug_sse_enabled else "disabled"
    try:
        auth_display = str(settings.resolved_auth_path())
    except ValueError:
        auth_display = settings.auth_path

    logger.info("Initializing Codex Gateway ...")
    logger.info(
        "✓ Loaded configuration host=%s port=%s auth_path=%s debug=%s api_keys=%d admin_key=%s",
        settings.host,
        settings.port,
        auth_display,
        debug_display,
        len(settings.api_keys),
        "set" if settings.admin_key else "unset",
    )
    logger.info("OAuth redirect URI: %s", settings.redirect_uri())


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Codex OpenAI-compatible gateway")
    parser.add_argument("--host", default=None, help=f"Host interface to bind (default {DEFAULT_HOST})")
    parser.add_argument("--port", type=int, default=None, help=f"Port to bind (default {DEFAULT_PORT})")
    parser.add_argument(
        "--auth-path",
        default=None,
        help=f"Path to codex auth.json (default {DEFAULT_AUTH_PATH})",
    )
    parser.add_argument(
        "--redirect-prefix",
        default=None,
        help="Public base URL used to build the OAuth callback URI",
    )
    parser.add_argument(
        "--debug",
        metavar="PATH",
        nargs="?",
        const="",
        default=None,
        help="Enable SSE debug logging, optionally writing to PATH",
    )
    return parser.parse_args(argv)


def run(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    args = parse_args(argv)
    settings = _build_settings(args)

    try:
        # Validate auth config before creating the app so Uvicorn stays quiet.
        _read_tokens(settings.resolved_auth_path())
    except (AuthConfigError, ValueError) as err:
        logger.error("[!] Auth configuration error: %s", err)
        raise SystemExit(1)

    _log_configuration(settings)

    uvicorn.run(
        create_app(settings),
        host=settings.host or DEFAULT_HOST,
        port=settings.port or DEFAULT_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
