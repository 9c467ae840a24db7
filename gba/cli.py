"""CLI entry point: gba init|plan|run|list|status|templates."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from .errors import GbaError

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 3

GITIGNORE_ENTRIES = [".gba/logs/", ".gba/features/*/.lock", ".trees/"]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gba",
        description="GBA -- resumable multi-phase feature execution",
    )
    parser.add_argument(
        "--repo", "-r", type=str, default=".",
        help="Repository path (default: current dir)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Verbose logging",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- init ---
    init_cmd = subparsers.add_parser("init", help="Initialize GBA in the repository")
    init_cmd.add_argument(
        "--force", "-f", action="store_true",
        help="Reinitialize even if .gba exists",
    )

    # --- plan ---
    plan_cmd = subparsers.add_parser("plan", help="Plan a new feature")
    plan_cmd.add_argument("feature_slug", type=str, help='Feature slug (e.g. "user-auth")')
    plan_cmd.add_argument("--description", "-d", type=str, help="Initial feature description")

    # --- run ---
    run_cmd = subparsers.add_parser("run", help="Execute a planned feature")
    run_cmd.add_argument("feature", type=str, help="Feature key, id or slug")
    run_cmd.add_argument(
        "--resume", "-R", action="store_true",
        help="Resume an interrupted run from its last checkpoint",
    )
    run_cmd.add_argument(
        "--restart", action="store_true",
        help="Run a failed feature again from the failed phase",
    )
    run_cmd.add_argument(
        "--dry-run", action="store_true",
        help="Show which phases would run without executing",
    )
    run_cmd.add_argument("--model", type=str, help="Model override")
    run_cmd.add_argument(
        "--max-attempts", dest="max_attempts", type=int,
        help="Max attempts per phase for transient errors",
    )
    run_cmd.add_argument(
        "--timeout", dest="timeout_seconds", type=float,
        help="Timeout per invocation in seconds",
    )

    # --- list / status / templates ---
    subparsers.add_parser("list", help="List features and their status")
    status_cmd = subparsers.add_parser("status", help="Show feature status")
    status_cmd.add_argument("feature", type=str, nargs="?", help="Feature key, id or slug")
    subparsers.add_parser("templates", help="List available prompt templates")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    handlers = {
        "init": _init,
        "plan": _plan,
        "run": _run,
        "list": _list,
        "status": _status,
        "templates": _templates,
    }
    try:
        return handlers[args.command](args)
    except GbaError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


def _config(args: argparse.Namespace, **overrides):
    from .config import load_config

    config = load_config({"repo": args.repo, **overrides})
    if args.verbose:
        config.log_level = "DEBUG"
    return config


def _require_initialized(config) -> None:
    if not config.gba_path.exists():
        raise GbaError("GBA not initialized. Run 'gba init' first.")


def _init(args: argparse.Namespace) -> int:
    from .config import CONFIG_FILE, DEFAULT_CONFIG_TOML
    from .prompts import DEFAULT_TEMPLATE, PHASE_PROMPT_TEMPLATE

    repo = Path(args.repo).resolve()
    gba_path = repo / ".gba"
    if gba_path.exists() and not args.force:
        raise GbaError("GBA already initialized in this repository. Use --force to reinitialize.")

    print("Initializing GBA...")
    (gba_path / "features").mkdir(parents=True, exist_ok=True)
    (gba_path / CONFIG_FILE).write_text(DEFAULT_CONFIG_TOML)
    print(f"  Created .gba/ and .gba/{CONFIG_FILE}")

    prompts = repo / "prompts"
    prompts.mkdir(exist_ok=True)
    template_path = prompts / DEFAULT_TEMPLATE
    if not template_path.exists():
        template_path.write_text(PHASE_PROMPT_TEMPLATE)
        print(f"  Created prompts/{DEFAULT_TEMPLATE}")

    gitignore = repo / ".gitignore"
    existing = gitignore.read_text().splitlines() if gitignore.exists() else []
    missing = [entry for entry in GITIGNORE_ENTRIES if entry not in existing]
    if missing:
        with open(gitignore, "a") as f:
            if existing and existing[-1].strip():
                f.write("\n")
            f.write("# GBA\n")
            for entry in missing:
                f.write(f"{entry}\n")
        print("  Updated .gitignore")

    print("\nNext steps:")
    print(f"  1. Review .gba/{CONFIG_FILE} and prompts/")
    print("  2. Run 'gba plan <feature-slug>' to plan a new feature")
    return EXIT_OK


def _plan(args: argparse.Namespace) -> int:
    from .store import StateStore

    config = _config(args)
    _require_initialized(config)
    store = StateStore(config.gba_path)
    state = store.create(args.feature_slug, config.phase_names, args.description)

    print(f"Created feature {state.key} with {len(state.phases)} phases")
    print("\nNext steps:")
    print(f"  1. Edit .gba/features/{state.key}/specs/design.md")
    print(f"  2. Edit .gba/features/{state.key}/specs/verification.md")
    print(f"  3. Run 'gba run {state.key}' to execute the feature")
    return EXIT_OK


def _run(args: argparse.Namespace) -> int:
    from .errors import StateNotFoundError
    from .models import FeatureStatus, RunOutcome
    from .orchestrator import PhaseRunner

    config = _config(
        args,
        model=args.model,
        max_attempts=args.max_attempts,
        timeout_seconds=args.timeout_seconds,
    )
    if args.dry_run:
        config.structured_log = False
    _require_initialized(config)
    runner = PhaseRunner(config)

    key = runner.store.find(args.feature)
    if not args.dry_run:
        try:
            state = runner.store.load(key)
        except StateNotFoundError:
            state = None
        interrupted = (
            state is not None
            and state.status == FeatureStatus.IN_PROGRESS
            and state.resume.can_resume
        )
        if interrupted and not args.resume:
            print(f"Feature {key} was interrupted at phase '{state.resume.next_phase}'.")
            print(f"Use 'gba run {key} --resume' to continue.")
            return EXIT_INTERRUPTED

    report = asyncio.run(runner.run(
        key,
        restart=args.restart,
        dry_run=args.dry_run,
        handle_signals=True,
    ))

    print()
    if report.outcome == RunOutcome.DRY_RUN:
        return EXIT_OK
    if report.outcome == RunOutcome.COMPLETED:
        stats = report.total_stats
        print(f"Feature {key} completed.")
        print(f"  Phases: {len(report.phases)}")
        print(f"  Turns: {stats.turns}  Tokens: {stats.input_tokens} in / {stats.output_tokens} out")
        print(f"  Total cost: ${stats.cost_usd:.4f}")
        if report.pull_request_url:
            print(f"  Pull request: {report.pull_request_url}")
        return EXIT_OK
    if report.outcome == RunOutcome.INTERRUPTED:
        reason = report.interrupt_reason.value if report.interrupt_reason else "unknown"
        print(f"Feature {key} interrupted ({reason}).")
        print(f"  Resume with: {report.resume_command}")
        return EXIT_INTERRUPTED

    print(f"Feature {key} failed in phase '{report.failed_phase}'.")
    print(f"  Error: {report.error}")
    if not args.restart:
        print(f"  Run again with: gba run {key} --restart")
    return EXIT_FAILED


def _list(args: argparse.Namespace) -> int:
    from .store import StateStore

    config = _config(args)
    _require_initialized(config)
    states = StateStore(config.gba_path).list_features()
    if not states:
        print("No features found.")
        return EXIT_OK
    for state in states:
        done = sum(1 for p in state.phases if p.status.value == "completed")
        print(f"  {state.key:<32} {state.status.value:<11} {done}/{len(state.phases)} phases")
    return EXIT_OK


def _status(args: argparse.Namespace) -> int:
    from .models import FeatureStatus
    from .store import StateStore

    config = _config(args)
    _require_initialized(config)
    store = StateStore(config.gba_path)

    if args.feature is None:
        states = store.list_features()
        counts = {status: 0 for status in FeatureStatus}
        for state in states:
            counts[state.status] += 1
        print("Feature Summary:")
        print(f"  Total:       {len(states)}")
        print(f"  Planned:     {counts[FeatureStatus.PLANNED]}")
        print(f"  In Progress: {counts[FeatureStatus.IN_PROGRESS]}")
        print(f"  Completed:   {counts[FeatureStatus.COMPLETED]}")
        print(f"  Failed:      {counts[FeatureStatus.FAILED]}")
        return EXIT_OK

    state = store.load(store.find(args.feature))
    print(f"Feature: {state.key}")
    print(f"Status:  {state.status.value}")
    print(f"Phase:   {state.current_phase}/{len(state.phases)}")
    for record in state.phases:
        extra = f" [{record.external_ref}]" if record.external_ref else ""
        print(f"  [{record.status.value:<10}] {record.name}{extra}")
    stats = state.total_stats
    print(f"Stats:   {stats.turns} turns, {stats.input_tokens}/{stats.output_tokens} tokens, "
          f"${stats.cost_usd:.4f}")
    if state.resume.can_resume:
        reason = state.resume.interrupt_reason.value if state.resume.interrupt_reason else "unknown"
        print(f"Resume:  next phase '{state.resume.next_phase}' (interrupted: {reason})")
    if state.error:
        print(f"Error:   {state.error}")
    if state.pull_request:
        print(f"PR:      {state.pull_request.url}")
    return EXIT_OK


def _templates(args: argparse.Namespace) -> int:
    from .prompts import PromptManager

    config = _config(args)
    print("Available templates:")
    for name in PromptManager(config.prompts_path).list_templates():
        print(f"  - {name}")
    return EXIT_OK


def cli_entry() -> None:
    """Entry point for pyproject.toml console_scripts."""
    sys.exit(main())
