"""CLI parser and entrypoint behaviour tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from flakeinfo import cli
from flakeinfo.cli import _build_parser, build_orchestrator, main
from flakeinfo.config import FlakeInfoConfig
from flakeinfo.errors import ConfigError
from flakeinfo.index.publisher import GenerationCounter
from flakeinfo.models import FlakeReference
from flakeinfo.orchestrator import PublishOutcome, RunReport, RunState


def test_cli_accepts_verbose_before_command() -> None:
    parser = _build_parser()
    args = parser.parse_args(["--verbose", "flake", "github:example/tools"])
    assert args.verbose is True
    assert args.command == "flake"
    assert args.reference == "github:example/tools"


def test_cli_accepts_options_after_command() -> None:
    parser = _build_parser()
    args = parser.parse_args(["sources", "sources.toml", "--no-publish", "--verbose"])
    assert args.command == "sources"
    assert args.no_publish is True
    assert args.verbose is True
    assert args.path == Path("sources.toml")


def test_cli_serve_defaults() -> None:
    parser = _build_parser()
    args = parser.parse_args(["serve"])
    assert args.host == "127.0.0.1"
    assert args.port == 8000
    assert args.no_publish is False


def test_build_orchestrator_requires_backend_settings(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("FLAKE_INFO_BACKEND_URL", raising=False)
    monkeypatch.delenv("FLAKE_INFO_BACKEND_TOKEN", raising=False)
    config = FlakeInfoConfig(root=tmp_path)

    assert build_orchestrator(config, publish=False).publisher is None
    with pytest.raises(ConfigError) as excinfo:
        build_orchestrator(config, publish=True)
    assert "FLAKE_INFO_BACKEND_URL" in str(excinfo.value)


def test_main_exits_with_config_error_when_backend_missing(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("FLAKE_INFO_BACKEND_URL", raising=False)
    monkeypatch.delenv("FLAKE_INFO_BACKEND_TOKEN", raising=False)

    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path), "flake", "github:example/tools"])

    assert excinfo.value.code == 2


def test_main_rejects_malformed_reference(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path), "--no-publish", "flake", "not a flake"])

    assert excinfo.value.code == 2


class _StubOrchestrator:
    def __init__(self, state: RunState) -> None:
        self.state = state
        self.references = []

    def run_many(self, references, *, publish=True, cancel=None):
        self.references.extend(references)
        reports = []
        for reference in references:
            report = RunReport(reference=reference)
            report.transition(self.state)
            report.publish_outcome = PublishOutcome.SKIPPED
            reports.append(report)
        return reports


def test_main_prints_summary_and_exit_code(monkeypatch, tmp_path: Path, capsys) -> None:
    stub = _StubOrchestrator(RunState.DONE)
    monkeypatch.setattr(cli, "build_orchestrator", lambda config, *, publish: stub)

    main(["--config", str(tmp_path), "--no-publish", "flake", "github:example/tools"])

    out = capsys.readouterr().out
    assert "github:example/tools: done" in out
    assert stub.references == [FlakeReference.parse("github:example/tools")]

    monkeypatch.setattr(cli, "build_orchestrator", lambda config, *, publish: _StubOrchestrator(RunState.ABORTED))
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(tmp_path), "--no-publish", "flake", "github:example/tools"])
    assert excinfo.value.code == 1


def test_main_reads_sources_file(monkeypatch, tmp_path: Path) -> None:
    sources = tmp_path / "sources.json"
    sources.write_text(
        '[{"type": "github", "owner": "example", "repo": "tools"},'
        ' {"type": "nixpkgs", "channel": "unstable", "git_ref": "cafebabe"}]',
        encoding="utf-8",
    )
    stub = _StubOrchestrator(RunState.DONE)
    monkeypatch.setattr(cli, "build_orchestrator", lambda config, *, publish: stub)

    main(["--config", str(tmp_path), "--no-publish", "sources", str(sources)])

    assert [reference.uri for reference in stub.references] == [
        "github:example/tools",
        "https://api.github.com/repos/NixOS/nixpkgs/tarball/cafebabe",
    ]


def test_build_orchestrator_uses_given_generation_counter(tmp_path: Path) -> None:
    config = FlakeInfoConfig(root=tmp_path)
    counter = GenerationCounter()

    first = build_orchestrator(config, publish=False, generations=counter)
    second = build_orchestrator(config, publish=False, generations=counter)

    assert first.generations is counter
    assert second.generations is counter
