"""Tests for package references."""

import pytest

from kubit.exceptions import InputException
from kubit.package import Reference, parse_reference


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("demo:v1", Reference("docker.io", "demo", "v1")),
        ("demo", Reference("docker.io", "demo", "latest")),
        ("org/demo:v1", Reference("docker.io", "org/demo", "v1")),
        ("ghcr.io/org/demo:v1", Reference("ghcr.io", "org/demo", "v1")),
        ("oci://ghcr.io/org/demo:v1", Reference("ghcr.io", "org/demo", "v1")),
        ("localhost:5000/demo", Reference("localhost:5000", "demo", "latest")),
        (
            "ghcr.io/org/demo@sha256:abcd",
            Reference("ghcr.io", "org/demo", None, "sha256:abcd"),
        ),
        (
            "ghcr.io/org/demo:v1@sha256:abcd",
            Reference("ghcr.io", "org/demo", "v1", "sha256:abcd"),
        ),
    ],
)
def test_parse_reference(value: str, expected: Reference) -> None:
    """Test parsing registry, repository, tag and digest."""
    assert parse_reference(value) == expected


@pytest.mark.parametrize("value", ["", "demo v1", "demo@sha256", "demo:"])
def test_invalid_reference(value: str) -> None:
    """Test malformed references."""
    with pytest.raises(InputException):
        parse_reference(value)


def test_pinned() -> None:
    """Test pinning a tag to a digest."""
    ref = parse_reference("ghcr.io/org/demo:v1").pinned("sha256:abcd")
    assert ref.target == "ghcr.io/org/demo@sha256:abcd"
    assert str(ref) == "ghcr.io/org/demo:v1@sha256:abcd"
    assert parse_reference("demo").target == "docker.io/demo:latest"
