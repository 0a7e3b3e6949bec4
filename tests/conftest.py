from __future__ import annotations

from pathlib import Path

import pytest

from flakeinfo.config import EvaluationConfig, FlakeInfoConfig, PublishConfig
from flakeinfo.models import FlakeReference
from tests._fixtures.fakes import InMemoryBackend


@pytest.fixture
def reference() -> FlakeReference:
    """A pinned reference to a small example flake."""
    return FlakeReference.parse("github:example/tools?rev=abc123")


@pytest.fixture
def config(tmp_path: Path) -> FlakeInfoConfig:
    """Two-platform configuration with instant retries."""
    return FlakeInfoConfig(
        root=tmp_path,
        evaluation=EvaluationConfig(
            primary_platform="x86_64-linux",
            platforms=["x86_64-linux", "aarch64-linux"],
        ),
        publish=PublishConfig(max_retries=3, backoff=0.0, batch_size=2),
    )


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()
