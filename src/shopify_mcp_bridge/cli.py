"""CLI entry point for the Shopify tool-server bridge."""

import asyncio
import json
import sys
from pathlib import Path

import click
from loguru import logger


def _configure_logging(debug: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG" if debug else "INFO",
        format="<dim>{time:HH:mm:ss.SSS}</dim> | <level>{level: <8}</level> | <level>{message}</level>",
    )


def _run(ctx: click.Context, action):
    """Start a bridge, run ``action(bridge)``, always shut down."""
    from shopify_mcp_bridge.engine.bridge import RPCBridge
    from shopify_mcp_bridge.engine.errors import BridgeError

    async def _go():
        bridge = RPCBridge(settings=ctx.obj["settings"])
        try:
            await bridge.start()
            return await action(bridge)
        finally:
            await bridge.shutdown()

    try:
        return asyncio.run(_go())
    except BridgeError as e:
        raise click.ClickException(f"[{e.kind}] {e.message}") from e


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to config.yaml (default ~/.shopify-mcp-bridge/config.yaml)")
@click.option("--debug", is_flag=True, help="Log protocol traffic and tool server stderr")
@click.pass_context
def main(ctx: click.Context, config_path, debug: bool) -> None:
    """Shopify MCP bridge: drive a JSON-RPC tool server over stdio."""
    from shopify_mcp_bridge.config.settings import Settings

    _configure_logging(debug)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["settings"] = Settings.load(config_path)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Start the tool server and print a health snapshot."""

    async def _health(bridge):
        return bridge.health()

    click.echo(json.dumps(_run(ctx, _health), indent=2))


@main.command()
@click.pass_context
def tools(ctx: click.Context) -> None:
    """List the tools the server exposes."""

    async def _list(bridge):
        return await bridge.list_tools()

    for tool in _run(ctx, _list):
        click.echo(f"  {tool.name}: {tool.description}")


@main.command()
@click.argument("name")
@click.option("--args", "raw_args", default="{}", help="Tool arguments as a JSON object")
@click.pass_context
def call(ctx: click.Context, name: str, raw_args: str) -> None:
    """Call a tool and print its result."""
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--args")
    if not isinstance(arguments, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--args")

    async def _call(bridge):
        return await bridge.call_tool(name, arguments)

    click.echo(json.dumps(_run(ctx, _call), indent=2))


@main.command("init-config")
@click.pass_context
def init_config(ctx: click.Context) -> None:
    """Write the current settings to config.yaml."""
    path = ctx.obj["settings"].save(ctx.obj["config_path"])
    click.echo(f"Wrote {path}")
