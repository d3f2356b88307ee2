"""CLI entry point."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import IO, Any

import rich_click as click

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.USE_MARKDOWN = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
click.rich_click.ERRORS_EPILOGUE = ""
click.rich_click.MAX_WIDTH = 100


def _load_request(file: IO[str]) -> dict[str, Any]:
    """Read and validate a Messages API request body, exiting on errors."""
    from pilot.gateway.transforms.validation import validate_request

    try:
        body = json.load(file)
    except json.JSONDecodeError as e:
        click.echo(f"Error: invalid JSON: {e}", err=True)
        sys.exit(1)

    errors = validate_request(body)
    if errors:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)
    return body


@click.group()
@click.version_option(package_name="pilot")
def cli() -> None:
    """Pilot - Messages API proxy for the Copilot backend.

    Accepts Messages API requests, classifies them for billing, and
    forwards them to the Copilot Chat Completions API.

    **Commands:**

        pilot serve          Run the proxy server

        pilot classify       Show the routing decision for a request

        pilot count-tokens   Estimate input tokens for a request

        pilot transform      Show the backend request for a request
    """
    pass


@cli.command()
@click.option("--host", default=None, help="Host to bind to (or PILOT_HOST)")
@click.option("--port", "-p", type=int, default=None, help="Port to bind to (or PILOT_PORT)")
@click.option("--base-url", default=None, help="Backend API URL (or COPILOT_BASE_URL)")
@click.option("--token", default=None, help="Backend bearer token (or COPILOT_TOKEN)")
@click.option("--free-model", default=None, help="Model for utility traffic (or PILOT_FREE_MODEL)")
@click.option(
    "--suggestion-mode",
    type=click.Choice(["free_model", "block"]),
    default=None,
    help="Route suggestion requests to the free model, or block them",
)
@click.option("--debug-dir", default=None, help="Save per-request debug dumps here")
@click.option("--config", "config_file", default=None, help="YAML config (or PILOT_PROXY_CONFIG)")
@click.option("--log-level", default=None, help="Log level (or PILOT_LOG_LEVEL)")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log format (or PILOT_LOG_FORMAT)",
)
def serve(
    host: str | None,
    port: int | None,
    base_url: str | None,
    token: str | None,
    free_model: str | None,
    suggestion_mode: str | None,
    debug_dir: str | None,
    config_file: str | None,
    log_level: str | None,
    log_format: str | None,
) -> None:
    """Run the proxy server until stopped.

    **Examples:**

        COPILOT_TOKEN=... pilot serve

        pilot serve --port 8080 --suggestion-mode block

        pilot serve --config pilot.yaml --log-format json
    """
    from pilot.compose import create_copilot_proxy
    from pilot.core.logging_config import configure_logging

    configure_logging(level=log_level, format=log_format)  # type: ignore[arg-type]

    try:
        asyncio.run(
            create_copilot_proxy(
                host=host,
                port=port,
                base_url=base_url,
                token=token,
                free_model=free_model,
                suggestion_mode=suggestion_mode,
                debug_dir=debug_dir,
                config_file=config_file,
            )
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


@cli.command()
@click.argument("file", type=click.File("r"), default="-")
@click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
@click.option("--config", "config_file", default=None, help="YAML config (or PILOT_PROXY_CONFIG)")
def classify(file: IO[str], json_output: bool, config_file: str | None) -> None:
    """Show the routing decision for a request body.

    Reads a Messages API request from FILE (or stdin) and prints its
    category, the X-Initiator value and the backend model it would use.

    **Examples:**

        pilot classify request.json

        cat request.json | pilot classify --json
    """
    from pilot.compose import build_proxy_config
    from pilot.gateway.classifier import classify as classify_request
    from pilot.gateway.transforms.anthropic import AnthropicTransformer
    from pilot.gateway.transforms.openai import OpenAITransformer

    body = _load_request(file)
    config = build_proxy_config(config_file=config_file)
    inbound = AnthropicTransformer().to_internal(body)
    result = classify_request(inbound)
    target = OpenAITransformer(
        model_families=config.model_families,
        free_model=config.free_model,
    ).target_model(inbound, result.decision)

    data = {
        "decision": result.decision.value,
        "initiator": result.decision.initiator,
        "charged": result.decision.chargeable,
        "model": target,
    }
    if result.payload is not None:
        data["payload"] = result.payload

    if json_output:
        click.echo(json.dumps(data, indent=2))
        return

    for key, value in data.items():
        click.echo(f"{key:<10} {value}")


@cli.command("count-tokens")
@click.argument("file", type=click.File("r"), default="-")
def count_tokens(file: IO[str]) -> None:
    """Estimate input tokens for a request body (4 characters per token).

    **Examples:**

        pilot count-tokens request.json
    """
    from pilot.gateway.tokens import estimate_input_tokens
    from pilot.gateway.transforms.anthropic import AnthropicTransformer

    body = _load_request(file)
    inbound = AnthropicTransformer().to_internal(body)
    click.echo(json.dumps({"input_tokens": estimate_input_tokens(inbound)}))


@cli.command()
@click.argument("file", type=click.File("r"), default="-")
@click.option("--config", "config_file", default=None, help="YAML config (or PILOT_PROXY_CONFIG)")
def transform(file: IO[str], config_file: str | None) -> None:
    """Print the Chat Completions request a body would be sent as.

    **Examples:**

        pilot transform request.json | jq .messages
    """
    from pilot.compose import build_proxy_config
    from pilot.gateway.classifier import classify as classify_request
    from pilot.gateway.transforms.anthropic import AnthropicTransformer
    from pilot.gateway.transforms.openai import OpenAITransformer

    body = _load_request(file)
    config = build_proxy_config(config_file=config_file)
    inbound = AnthropicTransformer().to_internal(body)
    decision = classify_request(inbound, detect_tool_execution=False).decision

    transformer = OpenAITransformer(
        model_families=config.model_families,
        free_model=config.free_model,
    )
    click.echo(json.dumps(transformer.to_upstream(inbound, decision), indent=2))


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
