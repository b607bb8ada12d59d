"""Shared CLI plumbing: context object, logging setup, error exits."""
from __future__ import annotations

import functools
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, NoReturn

import click
from rich.console import Console
from rich.logging import RichHandler

from ..environment import environment_lock, require_root
from ..errors import SealrootError
from ..maintenance import Provisioner

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

stderr_console = Console(stderr=True)


@dataclass
class CliState:
    """Per-invocation state stored on ``click.Context.obj``."""
    config: dict
    verbose: bool = False

    def provisioner(self) -> Provisioner:
        return Provisioner.from_config(self.config)


pass_state = click.make_pass_decorator(CliState)


def setup_logging(verbose: bool, log_file: str | None) -> None:
    """Route the ``sealroot`` loggers to stderr (rich) and the optional log file."""
    logger = logging.getLogger("sealroot")
    for handler in list(logger.handlers):
        if getattr(handler, "_sealroot", False):
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    rich_handler = RichHandler(
        console=stderr_console,
        show_time=False,
        show_path=False,
        rich_tracebacks=verbose,
    )
    rich_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    rich_handler._sealroot = True
    logger.addHandler(rich_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            log.debug("not logging to %s: %s", log_file, e)
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            file_handler.setLevel(logging.DEBUG)
            file_handler._sealroot = True
            logger.addHandler(file_handler)


def fail(message: str) -> NoReturn:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def handle_errors(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Turn sealroot errors into a one-line message and exit code 1."""

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except SealrootError as e:
            log.debug("%s failed: %s", fn.__name__, e.reason)
            fail(str(e))

    return wrapper


def root_required(fn: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        require_root()
        return fn(*args, **kwargs)

    return wrapper


def confirm_destructive(prompt: str, assume_yes: bool) -> None:
    """Ask the operator to type 'yes'; anything else aborts with exit 1."""
    if assume_yes:
        return
    answer = click.prompt(f"{prompt} Type 'yes' to continue", default="", show_default=False)
    if answer.strip() != "yes":
        fail("operation cancelled")


__all__ = [
    "CliState",
    "pass_state",
    "setup_logging",
    "fail",
    "handle_errors",
    "root_required",
    "confirm_destructive",
    "environment_lock",
    "stderr_console",
]
