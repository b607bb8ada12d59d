from __future__ import annotations

import sys

import pytest

from sealroot.hostcmd import run_command


def test_run_command_captures_output() -> None:
    result = run_command([sys.executable, "-c", "print('hello')"])
    assert result.ok
    assert result.stdout.strip() == "hello"
    assert result.argv[0] == sys.executable


def test_run_command_nonzero_exit() -> None:
    result = run_command([sys.executable, "-c", "import sys; sys.exit(5)"])
    assert result.returncode == 5
    assert not result.ok


def test_run_command_missing_executable_is_127() -> None:
    result = run_command(["/nonexistent/tool", "--flag"])
    assert result.returncode == 127
    assert "/nonexistent/tool" in result.stderr


def test_run_command_timeout_is_124() -> None:
    result = run_command([sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.5)
    assert result.returncode == 124
    assert "timed out" in result.stderr


def test_run_command_rejects_shell_strings() -> None:
    with pytest.raises(TypeError):
        run_command("ls -la")
