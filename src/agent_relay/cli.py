"""CLI entry point: relay ask, chat, health, fetch."""

import asyncio
import datetime
import logging
import sys
from pathlib import Path

import click
import structlog

from agent_relay._common import MAX_PROMPT_BYTES

# The prompt travels as one argv element, so stdin gets the same cap
MAX_STDIN_BYTES = MAX_PROMPT_BYTES

EXIT_WORDS = {"exit", "quit", ":q"}


def _silence_logs() -> None:
    """Suppress structlog output in CLI mode."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
    )


def _configure_file_logging() -> str:
    """Route structlog to a timestamped log file. Returns the log file path.

    Stdout carries the agent's reply and stderr the live activity, so all
    diagnostics go to .relay/logs/relay-{timestamp}.log instead.
    """
    log_dir = Path(".relay") / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.datetime.now().strftime("%Y%m%d-%H%M%S")
    log_path = log_dir / f"relay-{ts}.log"

    log_file = open(log_path, "w")  # noqa: SIM115 (closed at process exit)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=structlog.WriteLoggerFactory(file=log_file),
    )

    return str(log_path)


def _read_stdin(command_name: str) -> str:
    """Read stdin, capped at MAX_STDIN_BYTES."""
    if sys.stdin.isatty():
        click.echo(f"Error: No input on stdin. Pass a question or pipe content to `relay {command_name}`.", err=True)
        raise SystemExit(1)
    data = sys.stdin.buffer.read(MAX_STDIN_BYTES + 1)
    if len(data) > MAX_STDIN_BYTES:
        click.echo(
            f"Error: Input exceeds the {MAX_STDIN_BYTES // 1024} KiB limit.",
            err=True,
        )
        raise SystemExit(1)
    return data.decode("utf-8", errors="replace")


@click.group()
@click.version_option(package_name="agent-relay")
def main() -> None:
    """Agent Relay — bridge chat messages to a CLI coding agent."""
    _silence_logs()


@main.command()
@click.option("--quiet", "-q", is_flag=True, help="Hide tool calls and agent reasoning.")
@click.option("--new", "start_fresh", is_flag=True, help="Start a new conversation instead of continuing.")
@click.option("--output", "-o", "output_file", default=None, type=click.Path(), help="Write the reply to a file instead of stdout.")
@click.argument("question", nargs=-1)
def ask(question: tuple[str, ...], quiet: bool, start_fresh: bool, output_file: str | None) -> None:
    """Send one prompt to the agent. Reads stdin when no QUESTION is given."""
    from agent_relay.console import ConsoleSurface
    from agent_relay.errors import InvalidInputError, PromptTooLongError
    from agent_relay.escalation import user_message
    from agent_relay.relay import AgentRelay

    log_path = _configure_file_logging()

    prompt = " ".join(question) if question else _read_stdin("ask")
    if not prompt.strip():
        click.echo("Error: Empty input. Usage: relay ask <question>", err=True)
        raise SystemExit(1)

    surface = ConsoleSurface(verbose=not quiet)
    relay = AgentRelay()
    try:
        reply = asyncio.run(
            relay.process_input(
                prompt,
                continue_conversation=not start_fresh,
                on_event=lambda event: surface.stream_event(None, event),
            )
        )
    except PromptTooLongError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1)
    except InvalidInputError:
        click.echo("Error: Input is empty after removing control characters.", err=True)
        raise SystemExit(1)
    except Exception as exc:
        structlog.get_logger(__name__).exception("ask_failed", error=str(exc))
        click.echo(f"Error: {user_message(exc)}", err=True)
        click.echo(f"\nLog: {log_path}", err=True)
        raise SystemExit(1)

    if output_file:
        Path(output_file).write_text(reply)
        click.echo(f"Reply written to {output_file}", err=True)
    else:
        click.echo(reply)
    click.echo(f"\nLog: {log_path}", err=True)


async def _chat_loop(quiet: bool) -> None:
    from agent_relay.console import ConsoleSurface
    from agent_relay.delivery import IncomingMessage, MessageHandler
    from agent_relay.relay import AgentRelay

    surface = ConsoleSurface(verbose=not quiet)
    handler = MessageHandler(surface, AgentRelay())
    while True:
        try:
            line = await asyncio.to_thread(click.prompt, "you", prompt_suffix="> ", default="", show_default=False)
        except (EOFError, click.Abort):
            click.echo()
            return
        if line.strip().lower() in EXIT_WORDS:
            return
        if not line.strip():
            continue
        await handler.handle(IncomingMessage(content=line, author="console", is_dm=True), context=None)


@main.command()
@click.option("--quiet", "-q", is_flag=True, help="Hide tool calls and agent reasoning.")
def chat(quiet: bool) -> None:
    """Interactive session. Supports /reset, /help and exit."""
    log_path = _configure_file_logging()
    click.echo("Type a message, /help for commands, exit to quit.\n", err=True)
    asyncio.run(_chat_loop(quiet))
    click.echo(f"\nLog: {log_path}", err=True)


@main.command()
def health() -> None:
    """Check that the agent CLI answers a trivial prompt."""
    from agent_relay.relay import AgentRelay

    log_path = _configure_file_logging()
    click.echo("Checking agent...", err=True)
    healthy = asyncio.run(AgentRelay().check_health())
    if healthy:
        click.echo("OK")
        return
    click.echo(f"Agent is not responding. See {log_path}", err=True)
    raise SystemExit(1)


@main.command()
@click.argument("text", nargs=-1, required=True)
def fetch(text: tuple[str, ...]) -> None:
    """Show the prompt the agent would receive after HTTP preprocessing."""
    from agent_relay.config import RelayConfig
    from agent_relay.http_proxy import preprocess_http_requests

    _configure_file_logging()
    config = RelayConfig.load()
    result = asyncio.run(
        preprocess_http_requests(
            " ".join(text),
            timeout=config.http_timeout,
            preview_chars=config.http_preview_chars,
            allowed_hosts=config.http_allowed_hosts,
        )
    )
    click.echo(result)
