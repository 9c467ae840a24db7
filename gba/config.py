"""Configuration loading: defaults -> .gba/config.toml -> CLI flags."""

from __future__ import annotations

import sys

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigError
from .prompts import DEFAULT_TEMPLATE

CONFIG_FILE = "config.toml"


class PhaseDefinition(BaseModel):
    """One configured phase. `template` is a prompt template id."""

    name: str
    description: str = ""
    template: str = DEFAULT_TEMPLATE
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)


DEFAULT_PHASES: list[PhaseDefinition] = [
    PhaseDefinition(name="observe", description="Observe codebase and understand context"),
    PhaseDefinition(name="build", description="Build implementation"),
    PhaseDefinition(name="test", description="Write and run tests"),
    PhaseDefinition(name="verification", description="Verify implementation against requirements"),
    PhaseDefinition(name="review", description="Code review and refinement"),
    PhaseDefinition(name="pr", description="Create pull request"),
]


class GbaConfig(BaseModel):
    """All GBA settings. Loaded from defaults, then .gba/config.toml, then CLI flags."""

    # Paths
    repo_path: Path = Field(default_factory=lambda: Path.cwd())
    gba_dir: Path = Path(".gba")
    prompts_dir: Path = Path("prompts")

    # Agent
    model: str = "sonnet"
    permission_mode: Literal["default", "acceptEdits", "plan", "bypassPermissions"] = "acceptEdits"
    max_turns: int = 50
    timeout_seconds: float = 300.0

    # Retry
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_multiplier: float = Field(default=2.0, gt=1)
    retry_max_delay: float = 60.0
    retry_jitter: bool = False

    # Phases
    phases: list[PhaseDefinition] = Field(default_factory=lambda: [
        p.model_copy() for p in DEFAULT_PHASES
    ])
    summary_max_chars: int = 200

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path(".gba/logs")
    structured_log: bool = True

    @field_validator("phases")
    @classmethod
    def _unique_phase_names(cls, phases: list[PhaseDefinition]) -> list[PhaseDefinition]:
        names = [p.name for p in phases]
        if not names:
            raise ValueError("at least one phase is required")
        if len(set(names)) != len(names):
            raise ValueError(f"phase names must be unique: {names}")
        return phases

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]

    @property
    def gba_path(self) -> Path:
        return self.repo_path / self.gba_dir

    @property
    def prompts_path(self) -> Path:
        return self.repo_path / self.prompts_dir


def load_config(cli_args: dict[str, Any]) -> GbaConfig:
    """Load config from defaults -> .gba/config.toml -> CLI args."""
    repo_path = Path(cli_args.get("repo") or ".").resolve()
    gba_dir = Path(cli_args.get("gba_dir") or ".gba")
    toml_path = repo_path / gba_dir / CONFIG_FILE

    config_data: dict[str, Any] = {}

    if toml_path.exists():
        try:
            with open(toml_path, "rb") as f:
                config_data.update(tomllib.load(f))
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"{toml_path}: {e}") from e

    # Only non-None CLI values override
    for key, value in cli_args.items():
        if value is not None and key != "repo":
            config_data[key] = value

    config_data["repo_path"] = repo_path

    try:
        return GbaConfig(**config_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


DEFAULT_CONFIG_TOML = """\
# GBA configuration

# Agent
model = "sonnet"
permission_mode = "acceptEdits"   # default | acceptEdits | plan | bypassPermissions
max_turns = 50
timeout_seconds = 300

# Retry of transient failures (network, rate limit, timeout)
max_attempts = 3
retry_base_delay = 1.0
retry_multiplier = 2.0
retry_max_delay = 60.0

# Phase execution order. `template` names a file in prompts/ (default: phase.md).
[[phases]]
name = "observe"
description = "Observe codebase and understand context"

[[phases]]
name = "build"
description = "Build implementation"

[[phases]]
name = "test"
description = "Write and run tests"

[[phases]]
name = "verification"
description = "Verify implementation against requirements"

[[phases]]
name = "review"
description = "Code review and refinement"

[[phases]]
name = "pr"
description = "Create pull request"
"""
