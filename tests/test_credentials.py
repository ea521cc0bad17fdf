"""Tests for registry credential providers."""

from collections.abc import Callable
import json
from pathlib import Path
from typing import Any

import pytest

from kubit.credentials import LocalCredentials, NoCredentials, docker_config_path
from kubit.manifest import Installation


@pytest.fixture(name="installation")
def installation_fixture(app_instance: Callable[..., dict[str, Any]]) -> Installation:
    """The demo installation."""
    return Installation.parse_doc(app_instance())


async def test_no_credentials(installation: Installation) -> None:
    """Test anonymous access."""
    assert await NoCredentials().credentials(installation) == []


async def test_local_credentials(
    installation: Installation, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test reading the docker config of the current user."""
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path))
    assert docker_config_path() == tmp_path / "config.json"
    assert await LocalCredentials().credentials(installation) == []

    (tmp_path / "config.json").write_text(
        json.dumps({"auths": {"ghcr.io": {"username": "me", "password": "pw"}}})
    )
    (config,) = await LocalCredentials().credentials(installation)
    assert config.registries == ["ghcr.io"]
