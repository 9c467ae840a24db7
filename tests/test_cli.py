"""Tests for the gba command line."""

from __future__ import annotations

from pathlib import Path

import pytest

from gba.cli import EXIT_FAILED, EXIT_INTERRUPTED, EXIT_OK, build_parser, main
from gba.models import FeatureStatus, InterruptReason
from gba.store import StateStore


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    assert main(["--repo", str(tmp_path), "init"]) == EXIT_OK
    return tmp_path


def _gba(repo: Path, *args: str) -> int:
    return main(["--repo", str(repo), *args])


class TestParser:
    def test_run_flags(self):
        args = build_parser().parse_args(["run", "demo", "--resume", "--max-attempts", "5"])
        assert args.command == "run"
        assert args.feature == "demo"
        assert args.resume is True
        assert args.restart is False
        assert args.max_attempts == 5

    def test_command_is_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestInit:
    def test_creates_workspace(self, repo: Path):
        assert (repo / ".gba" / "features").is_dir()
        assert (repo / ".gba" / "config.toml").exists()
        assert (repo / "prompts" / "phase.md").exists()
        assert ".gba/logs/" in (repo / ".gitignore").read_text()

    def test_refuses_to_reinitialize(self, repo: Path, capsys):
        assert _gba(repo, "init") == EXIT_FAILED
        assert "already initialized" in capsys.readouterr().err
        assert _gba(repo, "init", "--force") == EXIT_OK

    def test_gitignore_entries_not_duplicated(self, repo: Path):
        _gba(repo, "init", "--force")
        assert (repo / ".gitignore").read_text().count(".gba/logs/") == 1


class TestPlanAndInspect:
    def test_plan_requires_init(self, tmp_path: Path, capsys):
        assert _gba(tmp_path, "plan", "demo") == EXIT_FAILED
        assert "gba init" in capsys.readouterr().err

    def test_plan_list_and_status(self, repo: Path, capsys):
        assert _gba(repo, "plan", "User Auth", "-d", "Log users in") == EXIT_OK
        assert "Created feature 0001_user-auth with 6 phases" in capsys.readouterr().out

        assert _gba(repo, "list") == EXIT_OK
        out = capsys.readouterr().out
        assert "0001_user-auth" in out
        assert "0/6 phases" in out

        assert _gba(repo, "status") == EXIT_OK
        assert "Planned:     1" in capsys.readouterr().out

        assert _gba(repo, "status", "user-auth") == EXIT_OK
        out = capsys.readouterr().out
        assert "Status:  planned" in out
        assert "[pending   ] observe" in out

    def test_status_unknown_feature(self, repo: Path, capsys):
        _gba(repo, "plan", "demo")
        assert _gba(repo, "status", "nope") == EXIT_FAILED
        assert "not found" in capsys.readouterr().err

    def test_templates(self, repo: Path, capsys):
        (repo / "prompts" / "review.md").write_text("Review {{ feature_slug }}")
        assert _gba(repo, "templates") == EXIT_OK
        out = capsys.readouterr().out
        assert "  - phase.md" in out
        assert "  - review.md" in out


class TestRun:
    def test_dry_run_lists_phases(self, repo: Path, capsys):
        _gba(repo, "plan", "demo")
        capsys.readouterr()

        assert _gba(repo, "run", "demo", "--dry-run") == EXIT_OK
        out = capsys.readouterr().out
        assert "[dry-run] Would run: observe -- Observe codebase and understand context" in out
        assert "[dry-run] Would run: pr -- Create pull request" in out
        state = StateStore(repo / ".gba").load("0001_demo")
        assert state.status == FeatureStatus.PLANNED

    def test_interrupted_feature_requires_resume(self, repo: Path, capsys):
        _gba(repo, "plan", "demo")
        store = StateStore(repo / ".gba")
        state = store.load("0001_demo")
        state.start_execution()
        state.mark_for_resume(InterruptReason.USER_CANCELLED)
        store.save("0001_demo", state)
        capsys.readouterr()

        assert _gba(repo, "run", "demo") == EXIT_INTERRUPTED
        out = capsys.readouterr().out
        assert "interrupted at phase 'observe'" in out
        assert "gba run 0001_demo --resume" in out
        assert store.load("0001_demo").revision == state.revision

    def test_unknown_feature(self, repo: Path, capsys):
        assert _gba(repo, "run", "ghost") == EXIT_FAILED
        assert "Error:" in capsys.readouterr().err
