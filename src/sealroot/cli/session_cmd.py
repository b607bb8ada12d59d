"""The ``enter`` command."""
from __future__ import annotations

import sys

import click

from ..sandbox.engine import SessionEntryEngine, SessionResult
from .common import CliState, handle_errors, pass_state, root_required

STATUS_MARKS = {"unavailable": "-", "failed": "✗", "completed": "✓"}


def _report(result: SessionResult) -> None:
    click.echo("Isolation attempts:", err=True)
    for attempt in result.attempts:
        mark = STATUS_MARKS.get(attempt.status, "?")
        detail = f" ({attempt.detail})" if attempt.detail else ""
        click.echo(f"  {mark} {attempt.method.value}: {attempt.status}{detail}", err=True)
    if result.timed_out:
        click.echo("⚠ Session timed out and was terminated", err=True)
    if result.degraded:
        click.echo("⚠ Session ran WITHOUT isolation (unrestricted root shell)", err=True)
    method = result.method.value if result.method else "none"
    click.echo(f"Session ended: method={method} exit_code={result.exit_code}", err=True)


@click.command("enter")
@click.argument("username")
@pass_state
@handle_errors
@root_required
def enter_command(state: CliState, username: str) -> None:
    """Open an interactive shell for USERNAME inside the root."""
    p = state.provisioner()
    engine = SessionEntryEngine(
        p.env,
        registry=p.registry,
        mounts=p.mounts,
        session_timeout=state.config.get("session_timeout"),
    )
    result = engine.enter(username)
    _report(result)
    sys.exit(result.exit_code)
