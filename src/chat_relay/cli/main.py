"""
chat-relay CLI — `chat-relay` command.

Commands:
  chat-relay tail              Print every event on the bus
  chat-relay send <message>    Publish one chat message and exit
  chat-relay online <player>   Look a player up in the presence directory
  chat-relay config            Show the effective configuration
"""

import json
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from chat_relay.config import DEFAULT_CONFIG_FILE, RelayConfig
from chat_relay.errors import ConfigError
from chat_relay.logging_config import setup_logging
from chat_relay.node import RelayNode

console = Console()


def _load_config(path: Optional[Path]) -> RelayConfig:
    try:
        if path is not None:
            return RelayConfig.from_file(path)
        if DEFAULT_CONFIG_FILE.exists():
            return RelayConfig.from_file(DEFAULT_CONFIG_FILE)
        return RelayConfig.from_env()
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(2)


def _get_config() -> RelayConfig:
    return click.get_current_context().find_root().obj["config"]


def _start_node(connect_timeout: float = 10.0) -> RelayNode:
    node = RelayNode(_get_config())
    node.start()
    with console.status(f"Connecting to {node.config.redis_url}..."):
        connected = node.session.wait_connected(connect_timeout)
    if not connected:
        console.print("[yellow]Broker not reachable yet; events will be buffered[/yellow]")
    return node


@click.group()
@click.version_option("0.1.0")
@click.option("-c", "--config", "config_path", type=click.Path(path_type=Path, dir_okay=False), default=None,
              help=f"JSON config file (default: {DEFAULT_CONFIG_FILE} if present, else CHAT_RELAY_* env)")
@click.option("--origin", default=None, help="Override origin_id for this invocation")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], origin: Optional[str]):
    """chat-relay — fleet-wide chat relay over Redis pub/sub."""
    config = _load_config(config_path)
    if origin:
        config = config.model_copy(update={"origin_id": origin})
    setup_logging(config.log_level, config.log_format, origin_id=config.origin_id)
    ctx.obj = {"config": config}


@click.command("config")
def config_cmd():
    """Show the effective configuration."""
    console.print_json(json.dumps(_get_config().model_dump()))


from chat_relay.cli.bus import tail_cmd, send_cmd
from chat_relay.cli.presence import online_cmd

main.add_command(config_cmd)
main.add_command(tail_cmd)
main.add_command(send_cmd)
main.add_command(online_cmd)


if __name__ == "__main__":
    main()
