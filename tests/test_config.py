"""Tests for configuration defaults."""

import pytest

from kubit.config import ControllerConfig


@pytest.mark.parametrize(
    ("failures", "expected"),
    [
        (0, 0.0),
        (1, 5.0),
        (2, 10.0),
        (4, 40.0),
        (7, 300.0),
    ],
)
def test_backoff(failures: int, expected: float) -> None:
    """Test the retry delay grows exponentially up to the maximum."""
    assert ControllerConfig().backoff(failures) == expected


@pytest.mark.parametrize("failures", [1024, 1100, 10**6])
def test_backoff_many_failures(failures: int) -> None:
    """Test an installation failing for days keeps the maximum delay."""
    assert ControllerConfig().backoff(failures) == 300.0


def test_backoff_without_maximum() -> None:
    """Test the delay stays finite when the maximum is unreachable."""
    config = ControllerConfig(backoff_max=float("inf"))
    assert config.backoff(5000) == config.backoff(5001)
