"""CLI: chat-relay online"""

import click
from rich.console import Console

console = Console()


def _start_node(connect_timeout: float = 10.0):
    from chat_relay.cli.main import _start_node
    return _start_node(connect_timeout)


@click.command("online")
@click.argument("player")
def online_cmd(player: str):
    """Check whether PLAYER is online on any server in the fleet."""
    node = _start_node()
    try:
        if not node.connected:
            console.print("[red]Not connected to the broker[/red]")
            raise SystemExit(1)
        online = node.is_online_anywhere(player)
    finally:
        node.stop()
    if online:
        console.print(f"[green]{player} is online[/green]")
    else:
        console.print(f"[dim]{player} is not online[/dim]")
        raise SystemExit(1)
