"""Data models: persisted feature state, usage stats and run reports."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

STATE_VERSION = "0.1.0"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    """state.yml uses camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeatureStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class PhaseStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


class InterruptReason(str, Enum):
    USER_CANCELLED = "userCancelled"
    TIMEOUT = "timeout"
    ERROR = "error"
    SYSTEM_SHUTDOWN = "systemShutdown"


class Stats(_CamelModel):
    """Usage counters for one or more invocations. Immutable; combine with +."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    turns: int = Field(default=0, ge=0)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost_usd: Decimal = Field(default=Decimal("0"), ge=0)

    def __add__(self, other: Stats) -> Stats:
        if not isinstance(other, Stats):
            return NotImplemented
        return Stats(
            turns=self.turns + other.turns,
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
        )

    @classmethod
    def total(cls, items: Iterable[Stats | None]) -> Stats:
        result = cls()
        for item in items:
            if item is not None:
                result = result + item
        return result

    @property
    def is_empty(self) -> bool:
        return self == Stats()


class PhaseRecord(_CamelModel):
    """Execution history of one configured phase."""

    name: str
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output_summary: str | None = None
    stats: Stats | None = None
    external_ref: str | None = None
    attempts: int = 0
    error: str | None = None


class FeatureInfo(_CamelModel):
    id: str
    slug: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> str:
        """Directory name under .gba/features."""
        return f"{self.id}_{self.slug}"


class ExecutionTiming(_CamelModel):
    start_time: datetime | None = None
    end_time: datetime | None = None


class PullRequestInfo(_CamelModel):
    url: str
    number: int | None = None


class ResumeInfo(_CamelModel):
    can_resume: bool = False
    last_completed_phase: str | None = None
    next_phase: str | None = None
    interrupted_at: datetime | None = None
    interrupt_reason: InterruptReason | None = None


class FeatureState(_CamelModel):
    """Root persisted aggregate for one feature.

    `current_phase` is the resume cursor: it only moves forward, and only
    after the phase it pointed at has completed. `total_stats` is always
    derived from the per-phase stats.
    """

    version: str = STATE_VERSION
    feature: FeatureInfo
    status: FeatureStatus = FeatureStatus.PLANNED
    current_phase: int = 0
    phases: list[PhaseRecord] = Field(default_factory=list)
    total_stats: Stats = Field(default_factory=Stats)
    execution: ExecutionTiming = Field(default_factory=ExecutionTiming)
    pull_request: PullRequestInfo | None = None
    resume: ResumeInfo = Field(default_factory=ResumeInfo)
    error: str | None = None
    revision: int = 0

    @classmethod
    def new(cls, feature_id: str, slug: str, phase_names: Iterable[str]) -> FeatureState:
        return cls(
            feature=FeatureInfo(id=feature_id, slug=slug),
            phases=[PhaseRecord(name=name) for name in phase_names],
        )

    @property
    def key(self) -> str:
        return self.feature.key

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]

    @property
    def in_progress_count(self) -> int:
        return sum(1 for p in self.phases if p.status == PhaseStatus.IN_PROGRESS)

    def touch(self) -> None:
        self.feature.updated_at = utcnow()

    def recompute_total_stats(self) -> None:
        self.total_stats = Stats.total(p.stats for p in self.phases)

    def last_completed_phase(self) -> str | None:
        """Name of the last completed phase before the cursor."""
        for record in reversed(self.phases[: self.current_phase]):
            if record.status == PhaseStatus.COMPLETED:
                return record.name
        return None

    def resume_index(self) -> int:
        """Where the next run starts. Never before the cursor."""
        if self.resume.can_resume and self.resume.next_phase in self.phase_names:
            return max(self.phase_names.index(self.resume.next_phase), self.current_phase)
        return self.current_phase

    # --- Transitions ---

    def start_execution(self) -> None:
        self.status = FeatureStatus.IN_PROGRESS
        if self.execution.start_time is None:
            self.execution.start_time = utcnow()
        self.resume = ResumeInfo()
        self.error = None
        self.touch()

    def start_phase(self, index: int) -> PhaseRecord:
        # A crash can leave a stale in-progress record behind
        for record in self.phases:
            if record.status == PhaseStatus.IN_PROGRESS:
                record.status = PhaseStatus.PENDING
        record = self.phases[index]
        record.status = PhaseStatus.IN_PROGRESS
        record.started_at = utcnow()
        record.completed_at = None
        record.error = None
        self.touch()
        return record

    def add_phase_stats(self, index: int, stats: Stats | None) -> None:
        if stats is None:
            return
        record = self.phases[index]
        record.stats = stats if record.stats is None else record.stats + stats
        self.recompute_total_stats()

    def complete_phase(
        self,
        index: int,
        output_summary: str,
        stats: Stats | None = None,
        external_ref: str | None = None,
    ) -> None:
        record = self.phases[index]
        record.status = PhaseStatus.COMPLETED
        record.completed_at = utcnow()
        record.output_summary = output_summary
        record.error = None
        if external_ref:
            record.external_ref = external_ref
        self.add_phase_stats(index, stats)
        self.current_phase = max(self.current_phase, index + 1)
        self.touch()

    def fail_phase(self, index: int, error: str) -> None:
        record = self.phases[index]
        record.status = PhaseStatus.FAILED
        record.completed_at = utcnow()
        record.error = error
        self.status = FeatureStatus.FAILED
        self.error = f"Phase '{record.name}' failed: {error}"
        self.resume = ResumeInfo()
        self.touch()

    def interrupt_phase(self, index: int, reason: InterruptReason, error: str | None = None) -> None:
        """Return the phase to pending and record where to resume."""
        record = self.phases[index]
        record.status = PhaseStatus.PENDING
        record.error = error
        if error:
            self.error = f"Phase '{record.name}' interrupted: {error}"
        self.mark_for_resume(reason)

    def mark_for_resume(self, reason: InterruptReason) -> None:
        self.resume = ResumeInfo(
            can_resume=True,
            last_completed_phase=self.last_completed_phase(),
            next_phase=(
                self.phases[self.current_phase].name
                if self.current_phase < len(self.phases)
                else None
            ),
            interrupted_at=utcnow(),
            interrupt_reason=reason,
        )
        self.touch()

    def complete(self) -> None:
        self.status = FeatureStatus.COMPLETED
        self.execution.end_time = utcnow()
        self.resume = ResumeInfo()
        self.error = None
        self.touch()

    def restart(self) -> None:
        """Reset unexecuted phases so a failed feature can run again.

        Completed phases and all recorded stats are kept.
        """
        for record in self.phases[self.current_phase:]:
            record.status = PhaseStatus.PENDING
            record.started_at = None
            record.completed_at = None
            record.error = None
        self.status = FeatureStatus.PLANNED
        self.error = None
        self.resume = ResumeInfo()
        self.execution.end_time = None
        self.touch()


# --- Invocation value types ---


class InvocationOptions(BaseModel):
    """Options forwarded to the agent for one invocation."""

    model: str | None = None
    max_turns: int | None = None
    permission_mode: str | None = None
    cwd: Path | None = None
    system_prompt: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    disallowed_tools: list[str] = Field(default_factory=list)


class InvocationRequest(BaseModel):
    prompt: str
    options: InvocationOptions = Field(default_factory=InvocationOptions)
    phase_name: str | None = None
    timeout_seconds: float | None = None


class InvocationResult(BaseModel):
    output: str
    stats: Stats = Field(default_factory=Stats)
    duration_seconds: float = 0.0


# --- Run reporting ---


class RunOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    DRY_RUN = "dryRun"


class PhaseSummary(BaseModel):
    name: str
    status: PhaseStatus
    output_summary: str | None = None
    external_ref: str | None = None
    stats: Stats | None = None


class RunReport(BaseModel):
    """What a run did, or what a stored state says was done."""

    feature_id: str
    slug: str
    outcome: RunOutcome
    status: FeatureStatus
    total_stats: Stats
    phases: list[PhaseSummary] = Field(default_factory=list)
    failed_phase: str | None = None
    error: str | None = None
    interrupt_reason: InterruptReason | None = None
    resume_command: str | None = None
    pull_request_url: str | None = None
    phases_to_run: list[str] = Field(default_factory=list)
    invocations: int = 0

    @classmethod
    def from_state(cls, state: FeatureState, outcome: RunOutcome, **extra) -> RunReport:
        failed = next((p.name for p in state.phases if p.status == PhaseStatus.FAILED), None)
        resume_command = None
        if outcome == RunOutcome.INTERRUPTED:
            resume_command = f"gba run {state.key} --resume"
        return cls(
            feature_id=state.feature.id,
            slug=state.feature.slug,
            outcome=outcome,
            status=state.status,
            total_stats=state.total_stats,
            phases=[
                PhaseSummary(
                    name=p.name,
                    status=p.status,
                    output_summary=p.output_summary,
                    external_ref=p.external_ref,
                    stats=p.stats,
                )
                for p in state.phases
            ],
            failed_phase=failed,
            error=state.error,
            interrupt_reason=state.resume.interrupt_reason,
            resume_command=resume_command,
            pull_request_url=state.pull_request.url if state.pull_request else None,
            **extra,
        )
