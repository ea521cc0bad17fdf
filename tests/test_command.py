"""Tests for command library."""

import asyncio
from pathlib import Path

import pytest

from kubit.command import Command, capture, run, run_piped
from kubit.exceptions import CommandException


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_run_piped_command() -> None:
    """Test running commands piped together."""
    result = await run_piped(
        [
            Command(["echo", "Hello"]),
            Command(["sed", "s/Hello/Goodbye/"]),
        ]
    )
    assert result == "Goodbye\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_allowed_return_code() -> None:
    """Test a non-zero return code that indicates success."""
    result = await run(Command(["/bin/false"], retcodes=[1]))
    assert result == ""


async def test_capture_failure() -> None:
    """Test capturing the output of a failing command without raising."""
    result = await capture(Command(["sh", "-c", "echo out; echo err >&2; exit 3"]))
    assert not result.success
    assert result.returncode == 3
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.output == "out\nerr\n"


async def test_command_env() -> None:
    """Test passing extra environment variables."""
    result = await capture(
        Command(["sh", "-c", "echo $KUBIT_TEST"], env={"KUBIT_TEST": "value"})
    )
    assert result.success
    assert result.stdout == "value\n"


async def test_cancelled_command_is_killed(tmp_path: Path) -> None:
    """Test a command timing out stops running along with its children."""
    marker = tmp_path / "marker"
    cmd = Command(["sh", "-c", f"sleep 0.5; touch {marker}"])
    with pytest.raises(TimeoutError):
        async with asyncio.timeout(0.1):
            await capture(cmd)
    await asyncio.sleep(1)
    assert not marker.exists()
