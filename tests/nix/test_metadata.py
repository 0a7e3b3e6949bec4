"""Tests for flake metadata fetching."""

from __future__ import annotations

import json
import sys
import threading
import time

import pytest

from flakeinfo.errors import MetadataCancelled, MetadataError, MetadataTimeout
from flakeinfo.models import FlakeReference
from flakeinfo.nix.metadata import MetadataFetcher, parse_metadata

REFERENCE = FlakeReference.parse("github:example/tools")

METADATA = {
    "description": "Example tools",
    "lastModified": 1700000000,
    "resolvedUrl": "github:example/tools",
    "url": "github:example/tools/0123abcd",
    "revision": "0123abcd",
    "locks": {
        "root": "root",
        "nodes": {
            "root": {"inputs": {"nixpkgs": "nixpkgs", "flake-utils": "flake-utils"}},
            "nixpkgs": {},
            "flake-utils": {},
        },
    },
}


def test_fetch_runs_metadata_command() -> None:
    calls = []

    def runner(args, timeout, cancel):
        calls.append((list(args), timeout))
        return json.dumps(METADATA)

    fetcher = MetadataFetcher(executable="nix", timeout=12, runner=runner)
    metadata = fetcher.fetch(REFERENCE)

    args, timeout = calls[0]
    assert args[:3] == ["nix", "flake", "metadata"]
    assert "--json" in args and "--no-write-lock-file" in args
    assert args[-1] == "github:example/tools"
    assert timeout == 12
    assert metadata.description == "Example tools"
    assert metadata.revision == "0123abcd"
    assert metadata.last_modified == 1700000000
    assert metadata.locked_url == "github:example/tools/0123abcd"
    assert metadata.inputs == ("flake-utils", "nixpkgs")


def test_parse_metadata_falls_back_to_locked_revision() -> None:
    metadata = parse_metadata(REFERENCE, {"locked": {"rev": "feedface", "lastModified": 5}})

    assert metadata.revision == "feedface"
    assert metadata.last_modified == 5
    assert metadata.description is None
    assert metadata.inputs == ()


def test_invalid_json_is_a_metadata_error() -> None:
    fetcher = MetadataFetcher(runner=lambda args, timeout, cancel: "not json")

    with pytest.raises(MetadataError):
        fetcher.fetch(REFERENCE)


def test_default_runner_maps_failures() -> None:
    failing = [sys.executable, "-c", "import sys; sys.stderr.write('no such flake'); sys.exit(1)"]
    slow = [sys.executable, "-c", "import time; time.sleep(10)"]

    with pytest.raises(MetadataError, match="no such flake"):
        MetadataFetcher._default_runner(failing, 10)
    with pytest.raises(MetadataTimeout):
        MetadataFetcher._default_runner(slow, 0.2)


def test_fetch_hands_cancel_to_runner() -> None:
    seen = []

    def runner(args, timeout, cancel):
        seen.append(cancel)
        return json.dumps(METADATA)

    cancel = threading.Event()
    MetadataFetcher(runner=runner).fetch(REFERENCE, cancel=cancel)

    assert seen == [cancel]


def test_default_runner_stops_when_cancelled() -> None:
    slow = [sys.executable, "-c", "import time; time.sleep(30)"]
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(MetadataCancelled):
            MetadataFetcher._default_runner(slow, 60, cancel)
    finally:
        timer.cancel()

    assert time.monotonic() - started < 10
    assert isinstance(MetadataCancelled("x"), MetadataError)
