"""CLI: chat-relay tail, chat-relay send"""

import json
import threading
import uuid
from typing import Optional

import click
from rich.console import Console

from chat_relay.errors import SessionClosingError
from chat_relay.models.event import Actor, ChatEvent, EventKind

console = Console()


def _start_node(connect_timeout: float = 10.0):
    from chat_relay.cli.main import _start_node
    return _start_node(connect_timeout)


def _render(event: ChatEvent, suppressed: bool) -> str:
    who = f"[white]{event.actor.name}[/white]"
    origin = f"[dim]{event.origin_id}#{event.sequence}[/dim]"
    hidden = " [magenta](vanished)[/magenta]" if suppressed else ""
    if event.kind is EventKind.CHAT_MESSAGE:
        return f"{origin} [cyan]{event.channel}[/cyan] {who}: {event.text}{hidden}"
    if event.kind is EventKind.PRIVATE_MESSAGE:
        return f"{origin} {who} [gray]->[/gray] [white]{event.recipient}[/white]: {event.text}"
    if event.kind is EventKind.PRESENCE_JOIN:
        return f"{origin} [green]+ {event.actor.name} joined[/green]{hidden}"
    if event.kind is EventKind.PRESENCE_QUIT:
        return f"{origin} [red]- {event.actor.name} left[/red]{hidden}"
    if event.kind is EventKind.VANISH_CHANGED:
        state = "vanished" if event.vanished else "reappeared"
        return f"{origin} [magenta]{event.actor.name} {state}[/magenta]"
    return f"{origin} [yellow]unrecognized kind {event.raw_kind!r}[/yellow]"


@click.command("tail")
@click.option("--json-output", "--json", is_flag=True)
@click.option("--ordinary", is_flag=True, help="Tail as an ordinary consumer (vanished actors flagged)")
def tail_cmd(json_output: bool, ordinary: bool):
    """Print every event relayed on the bus (Ctrl+C to exit)."""
    node = _start_node()

    def show(event: ChatEvent, suppressed: bool) -> None:
        if json_output:
            click.echo(json.dumps({**event.model_dump(mode="json"), "suppressed": suppressed}))
        else:
            console.print(_render(event, suppressed))

    kinds = None if ordinary else set(EventKind)
    node.engine.register_consumer(show, privileged=not ordinary, kinds=kinds)
    console.print(f"[cyan]Tailing {', '.join(node.session.channels)} as {node.origin_id} (Ctrl+C to exit)[/cyan]")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        node.stop()


@click.command("send")
@click.argument("message")
@click.option("--as", "sender", required=True, help="Display name of the sending player")
@click.option("--player-id", default=None, help="Player UUID (default: random)")
@click.option("--channel", default="global")
@click.option("--to", "recipient", default=None, help="Send as a private message to this player")
def send_cmd(message: str, sender: str, player_id: Optional[str], channel: str, recipient: Optional[str]):
    """Publish a single chat message, drain and exit."""
    node = _start_node()
    actor = Actor(player_id=player_id or str(uuid.uuid4()), name=sender)
    try:
        if recipient:
            event = node.engine.notify_private_message(actor, recipient, message)
        else:
            event = node.engine.notify_chat_sent(actor, channel, message)
    except SessionClosingError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)
    finally:
        node.stop()
    if event is None:
        console.print("[red]Message could not be encoded (too large?)[/red]")
        raise SystemExit(1)
    if len(node.session.outbound):
        console.print(f"[red]Not delivered: broker unreachable at {node.config.redis_url}[/red]")
        raise SystemExit(1)
    console.print(f"[green]Sent[/green] [dim]{event.origin_id}#{event.sequence}[/dim]")
