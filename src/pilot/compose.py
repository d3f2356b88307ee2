"""Composition helpers for running the Copilot proxy.

Configuration values are resolved with priority:

1. Function arguments (highest)
2. Environment variables
3. YAML config file (path from argument or PILOT_PROXY_CONFIG)
4. Defaults
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from pilot.gateway.auth import StaticTokenProvider, TokenProvider
from pilot.gateway.copilot_proxy import CopilotProxyConfig, CopilotProxyServer
from pilot.gateway.web_search import WebSearchProvider

logger = logging.getLogger(__name__)

CONFIG_ENV_KEY = "PILOT_PROXY_CONFIG"


def load_config_file(config_file: str | None = None) -> dict[str, Any]:
    """Load the YAML config file, if one is configured.

    Raises:
        ValueError: If the file does not contain a mapping.
    """
    config_path = config_file or os.environ.get(CONFIG_ENV_KEY)
    if not config_path:
        return {}

    try:
        content = Path(config_path).read_text()
    except FileNotFoundError:
        logger.warning("Config file not found: %s", config_path)
        return {}

    file_config = yaml.safe_load(content) or {}
    if not isinstance(file_config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return file_config


def _resolver(file_config: dict[str, Any]) -> Callable[[Any, str | None, str, Any], Any]:
    def get_value(arg: Any, env_key: str | None, file_key: str, default: Any) -> Any:
        if arg is not None:
            return arg
        if env_key:
            env_val = os.environ.get(env_key)
            if env_val:
                return env_val
        file_val = file_config.get(file_key)
        if file_val is not None:
            return file_val
        return default

    return get_value


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def build_proxy_config(
    host: str | None = None,
    port: int | None = None,
    base_url: str | None = None,
    free_model: str | None = None,
    suggestion_mode: str | None = None,
    web_search_enabled: bool | None = None,
    debug_dir: str | None = None,
    config_file: str | None = None,
) -> CopilotProxyConfig:
    """Resolve a CopilotProxyConfig from arguments, environment and file."""
    file_config = load_config_file(config_file)
    get_value = _resolver(file_config)
    defaults = CopilotProxyConfig()

    model_families = defaults.model_families
    if file_config.get("model_families"):
        model_families = tuple(
            (str(token), str(model)) for token, model in file_config["model_families"].items()
        )

    extra_headers = dict(defaults.extra_headers)
    extra_headers.update({str(k): str(v) for k, v in (file_config.get("headers") or {}).items()})

    return CopilotProxyConfig(
        host=str(get_value(host, "PILOT_HOST", "host", defaults.host)),
        port=int(get_value(port, "PILOT_PORT", "port", defaults.port)),
        base_url=str(get_value(base_url, "COPILOT_BASE_URL", "base_url", defaults.base_url)),
        model_families=model_families,
        free_model=str(get_value(free_model, "PILOT_FREE_MODEL", "free_model", defaults.free_model)),
        extra_headers=extra_headers,
        web_search_enabled=_as_bool(
            get_value(web_search_enabled, None, "web_search", defaults.web_search_enabled)
        ),
        suggestion_mode=get_value(
            suggestion_mode, None, "suggestion_mode", defaults.suggestion_mode
        ),
        connect_timeout=float(file_config.get("connect_timeout", defaults.connect_timeout)),
        read_timeout=float(file_config.get("read_timeout", defaults.read_timeout)),
        max_retries=int(file_config.get("max_retries", defaults.max_retries)),
        max_body_size=int(file_config.get("max_body_size", defaults.max_body_size)),
        debug_dir=get_value(debug_dir, "PILOT_DEBUG_DIR", "debug_dir", None),
        log_full_requests=_as_bool(file_config.get("log_full_requests", False)),
    )


def resolve_token(token: str | None = None, config_file: str | None = None) -> str:
    """Resolve the backend bearer token.

    Raises:
        ValueError: If no token is configured anywhere.
    """
    get_value = _resolver(load_config_file(config_file))
    resolved = get_value(token, "COPILOT_TOKEN", "token", "")
    if not resolved:
        raise ValueError("A Copilot token is required. Set COPILOT_TOKEN or pass it explicitly.")
    return str(resolved)


async def create_copilot_proxy(
    host: str | None = None,
    port: int | None = None,
    base_url: str | None = None,
    token: str | None = None,
    free_model: str | None = None,
    suggestion_mode: str | None = None,
    debug_dir: str | None = None,
    config_file: str | None = None,
    token_provider: TokenProvider | None = None,
    web_search: WebSearchProvider | None = None,
) -> None:
    """Create and run the Copilot proxy server.

    This is a convenience function that blocks until stopped.

    Args:
        host: Host to bind to (or PILOT_HOST env var).
        port: Port to bind to (or PILOT_PORT env var).
        base_url: Backend API URL (or COPILOT_BASE_URL env var).
        token: Backend bearer token (or COPILOT_TOKEN env var).
        free_model: Model for utility/suggestion traffic (or PILOT_FREE_MODEL).
        suggestion_mode: "free_model" or "block".
        debug_dir: Directory for per-request debug dumps (or PILOT_DEBUG_DIR).
        config_file: Path to YAML config (or PILOT_PROXY_CONFIG env var).
        token_provider: Custom credential provider; overrides token.
        web_search: Search helper for dedicated web search requests.

    Example:
        >>> # export COPILOT_TOKEN=...
        >>> await create_copilot_proxy(port=8080)
    """
    config = build_proxy_config(
        host=host,
        port=port,
        base_url=base_url,
        free_model=free_model,
        suggestion_mode=suggestion_mode,
        debug_dir=debug_dir,
        config_file=config_file,
    )

    if token_provider is None:
        token_provider = StaticTokenProvider(resolve_token(token, config_file))

    server = CopilotProxyServer(
        config=config,
        token_provider=token_provider,
        web_search=web_search,
    )
    await server.serve()
