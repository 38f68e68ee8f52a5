"""
CLI interface for chatledger.

Usage:
    chatledger chats
    chatledger send "Hello there"
    chatledger send --chat chat-1768469400125-k3j9x0a2m "And then?"
    chatledger agents
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Optional

import typer
from typing_extensions import Annotated

from .api import ChatLedger
from .errors import ChatLedgerError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .orchestrator import FAILED
from .types import Agent, ChatSession

# Configure quiet mode by default (suppress verbose library output)
# Set CHATLEDGER_VERBOSE=1 to enable debug mode via environment
if os.environ.get("CHATLEDGER_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"chatledger {version('chatledger')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_user_override: Optional[str] = None
_config_dir_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _user_callback(value: Optional[str]):
    global _user_override
    _user_override = value


def _config_dir_callback(value: Optional[Path]):
    global _config_dir_override
    _config_dir_override = value


app = typer.Typer(
    name="chatledger",
    help="Chats and agents kept as versioned records.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    user: Annotated[Optional[str], typer.Option(
        "--user", "-u",
        help="End-user address (default: CHATLEDGER_USER_ADDRESS or config)",
        callback=_user_callback,
        is_eager=True,
    )] = None,
    config_dir: Annotated[Optional[Path], typer.Option(
        "--config-dir",
        envvar="CHATLEDGER_CONFIG_DIR",
        help="Directory holding chatledger.toml (default: ~/.chatledger/)",
        callback=_config_dir_callback,
        is_eager=True,
    )] = None,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
):
    """Chats and agents kept as versioned records."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _run(action: Callable[[ChatLedger], Any], *, connect: bool = True) -> Any:
    """Open the ledger, connect the user, run ``action`` and close.

    Known errors are shown as one line and exit 1.
    """
    async def runner():
        async with ChatLedger(_config_dir_override) as ledger:
            if connect:
                await ledger.connect(_user_override)
            return await action(ledger)

    try:
        return asyncio.run(runner())
    except (ChatLedgerError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _local_date(dt) -> str:
    if dt is None:
        return "----------"
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def _chat_dict(chat: ChatSession, status: Optional[str] = None) -> dict:
    d = {
        "id": chat.id,
        "title": chat.title,
        "messageCount": chat.unit_count,
        "updatedAt": chat.updated_at.isoformat() if chat.updated_at else None,
    }
    if status is not None:
        d["saveStatus"] = status
    return d


def _agent_dict(agent: Agent) -> dict:
    return {
        "id": agent.id,
        "name": agent.name,
        "description": agent.description,
        "files": [f.name for f in agent.file_context],
        "updatedAt": agent.updated_at.isoformat() if agent.updated_at else None,
    }


def _echo_json(data) -> None:
    typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


# -----------------------------------------------------------------------------
# Chats
# -----------------------------------------------------------------------------

@app.command()
def chats(
    limit: Annotated[int, typer.Option(
        "--limit", "-n",
        help="Maximum chats to show"
    )] = 20,
):
    """
    List chats, most recently active first.
    """
    async def action(ledger: ChatLedger):
        return await ledger.list_chats(refresh=False)

    items = _run(action)[:limit]
    if _get_json_output():
        _echo_json([_chat_dict(c) for c in items])
        return
    if not items:
        typer.echo("No chats")
        return
    for chat in items:
        typer.echo(f"{chat.id}  {_local_date(chat.last_activity)}  ({chat.unit_count}) {chat.title}")


@app.command()
def show(
    chat_id: Annotated[str, typer.Argument(help="Chat ID")],
):
    """
    Show the messages of a chat.
    """
    async def action(ledger: ChatLedger):
        return await ledger.select_chat(chat_id)

    chat = _run(action)
    if _get_json_output():
        _echo_json(chat.to_payload())
        return
    typer.echo(f"# {chat.title}")
    for m in chat.messages:
        who = f"{m.role} ({m.agent})" if m.agent else m.role
        typer.echo(f"\n[{who}]\n{m.content}")


@app.command()
def send(
    text: Annotated[str, typer.Argument(help="Message to send")],
    chat_id: Annotated[Optional[str], typer.Option(
        "--chat", "-c",
        help="Continue this chat (default: start a new one)"
    )] = None,
    agent_id: Annotated[Optional[str], typer.Option(
        "--agent", "-a",
        help="Answer as this agent"
    )] = None,
):
    """
    Send a message and stream the reply.

    \b
    Examples:
        chatledger send "Summarize the French revolution"
        chatledger send -c chat-1768469400125-k3j9x0a2m "Shorter please"
        chatledger send -a agent-1768469400125-a1b2c3d4e "Review this"
    """
    as_json = _get_json_output()

    def on_delta(delta: str) -> None:
        typer.echo(delta, nl=False)

    async def action(ledger: ChatLedger):
        result = await ledger.send(
            text, chat_id, agent_id, on_delta=None if as_json else on_delta
        )
        return result, ledger.save_status("chat", result.chat_id)

    result, status = _run(action)
    if as_json:
        _echo_json({
            "chatId": result.chat_id,
            "outcome": result.outcome,
            "content": result.content,
            "attempts": result.attempts,
            "saveStatus": status,
            "recordId": result.saved.record_id if result.saved else None,
        })
    else:
        typer.echo("")
        typer.echo(f"[{result.chat_id} {result.outcome}, {status}]", err=True)
    if result.outcome == FAILED or result.save_error is not None:
        raise typer.Exit(1)


@app.command("delete-chat")
def delete_chat(
    chat_id: Annotated[str, typer.Argument(help="Chat ID")],
):
    """
    Delete a chat (writes a deletion record).
    """
    async def action(ledger: ChatLedger):
        await ledger.delete_chat(chat_id)

    _run(action)
    typer.echo(f"Deleted {chat_id}", err=True)


# -----------------------------------------------------------------------------
# Agents
# -----------------------------------------------------------------------------

@app.command()
def agents():
    """
    List agents.
    """
    async def action(ledger: ChatLedger):
        return await ledger.list_agents(refresh=False)

    items = _run(action)
    if _get_json_output():
        _echo_json([_agent_dict(a) for a in items])
        return
    if not items:
        typer.echo("No agents")
        return
    for agent in items:
        files = f" [{agent.unit_count} files]" if agent.unit_count else ""
        typer.echo(f"{agent.id}  {agent.name}{files}")
        if agent.description:
            typer.echo(f"  {agent.description}")


@app.command("agent-create")
def agent_create(
    name: Annotated[str, typer.Argument(help="Agent name")],
    prompt: Annotated[str, typer.Option(
        "--prompt", "-p",
        help="System prompt"
    )],
    description: Annotated[str, typer.Option(
        "--description", "-d",
        help="Short description"
    )] = "",
):
    """
    Create an agent.
    """
    async def action(ledger: ChatLedger):
        return await ledger.create_agent(name, prompt, description)

    agent = _run(action)
    if _get_json_output():
        _echo_json(_agent_dict(agent))
    else:
        typer.echo(agent.id)


@app.command("agent-delete")
def agent_delete(
    agent_id: Annotated[str, typer.Argument(help="Agent ID")],
):
    """
    Delete an agent (writes a deletion record).
    """
    async def action(ledger: ChatLedger):
        await ledger.delete_agent(agent_id)

    _run(action)
    typer.echo(f"Deleted {agent_id}", err=True)


@app.command()
def attach(
    agent_id: Annotated[str, typer.Argument(help="Agent ID")],
    path: Annotated[Path, typer.Argument(help="File to upload")],
    content_type: Annotated[Optional[str], typer.Option(
        "--type", "-t",
        help="MIME type (default: guessed from the file name)"
    )] = None,
    description: Annotated[Optional[str], typer.Option(
        "--description", "-d",
        help="What the file is for"
    )] = None,
):
    """
    Upload a file into an agent's context.
    """
    path = path.expanduser()
    if not path.is_file():
        typer.echo(f"Error: Not a file: {path}", err=True)
        raise typer.Exit(1)
    data = path.read_bytes()

    async def action(ledger: ChatLedger):
        return await ledger.attach_file(agent_id, data, path.name, content_type, description)

    attachment = _run(action)
    if _get_json_output():
        _echo_json(attachment.to_dict())
    else:
        typer.echo(attachment.record_id)


# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------

@app.command()
def config(
    path: Annotated[Optional[str], typer.Argument(
        help="Config value to get (e.g., 'file', 'backend', 'user', 'completion.model')"
    )] = None,
):
    """
    Show configuration. Optionally get a specific value by path.

    \b
    Examples:
        chatledger config              # Show all config
        chatledger config file         # Config file location
        chatledger config backend      # Storage backend
    """
    from .config import get_config_dir, load_or_create_config

    cfg = load_or_create_config(_config_dir_override or get_config_dir())
    values = {
        "file": str(cfg.config_path),
        "backend": cfg.backend,
        "records": str(cfg.records_path) if cfg.backend == "local" else cfg.gateway.graphql_url,
        "user": _user_override or cfg.user_address,
        "owner": cfg.gateway.owner_address,
        "chat_app_name": cfg.chat_app_name,
        "agent_app_name": cfg.agent_app_name,
        "mutable_refs": cfg.use_mutable_refs,
        "completion": cfg.completion.name,
        "completion.model": cfg.completion_model,
        "api_key": "set" if cfg.gateway.api_key else "not set",
    }

    if path:
        if path not in values:
            typer.echo(f"Error: Unknown config path: {path}", err=True)
            raise typer.Exit(1)
        value = values[path]
        typer.echo(json.dumps(value) if _get_json_output() else value)
        return

    if _get_json_output():
        _echo_json(values)
        return
    for key, value in values.items():
        typer.echo(f"{key}: {value}")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="chatledger CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
