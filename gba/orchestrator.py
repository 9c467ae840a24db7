"""Phase runner: resumable state machine driving a feature through its phases."""

from __future__ import annotations

import asyncio
import re
import signal
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from .agent import ClaudeInvoker, Invoker
from .cancellation import CancellationToken, RunCancelled
from .errors import (
    ConfigError,
    ErrorKind,
    ExecError,
    RenderError,
    StateNotFoundError,
    TemplateNotFoundError,
)
from .executor import ExecutorActor
from .logging_config import setup_logger
from .models import (
    FeatureState,
    FeatureStatus,
    InterruptReason,
    InvocationOptions,
    InvocationRequest,
    InvocationResult,
    PullRequestInfo,
    RunOutcome,
    RunReport,
)
from .prompts import PromptManager
from .retry import RetryPolicy
from .store import StateStore
from .vcs import latest_commit_hash

if TYPE_CHECKING:
    from .config import GbaConfig

PULL_REQUEST_RE = re.compile(r"https://github\.com/[\w.-]+/[\w.-]+/pull/(\d+)")

# Execution errors that leave the feature resumable instead of failed
_RESUMABLE_KINDS = {
    ErrorKind.TIMEOUT: InterruptReason.TIMEOUT,
    ErrorKind.CANCELLED: InterruptReason.USER_CANCELLED,
    ErrorKind.SHUTDOWN: InterruptReason.SYSTEM_SHUTDOWN,
}


def _log_context(key: str, phase: str | None = None) -> dict[str, str]:
    """`extra` fields picked up by the JSON log formatter."""
    context = {"feature": key}
    if phase:
        context["phase"] = phase
    return context


def summarize_output(output: str, max_chars: int) -> str:
    text = output.strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class PhaseRunner:
    """Walks a feature's phases in order, persisting after every transition.

    Each phase is rendered, sent through an ExecutorActor under the retry
    policy, and recorded. A successful save is the checkpoint a later run
    resumes from.
    """

    def __init__(
        self,
        config: GbaConfig,
        store: StateStore | None = None,
        invoker: Invoker | None = None,
        renderer: PromptManager | None = None,
        retry_policy: RetryPolicy | None = None,
        token: CancellationToken | None = None,
        commit_lookup: Callable[[], str | None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.logger = setup_logger(config)
        self.store = store or StateStore(config.gba_path)
        self.invoker = invoker or ClaudeInvoker(InvocationOptions(
            model=config.model,
            max_turns=config.max_turns,
            permission_mode=config.permission_mode,
            cwd=config.repo_path,
        ))
        self.renderer = renderer or PromptManager(config.prompts_path)
        self.retry = retry_policy or RetryPolicy(
            base_delay=config.retry_base_delay,
            multiplier=config.retry_multiplier,
            max_attempts=config.max_attempts,
            max_delay=config.retry_max_delay,
            jitter=config.retry_jitter,
        )
        self.token = token or CancellationToken()
        self.commit_lookup = commit_lookup or (lambda: latest_commit_hash(config.repo_path))
        self._sleep = sleep
        self._invocations = 0
        self._signals_received = 0

    async def run(
        self,
        feature: str,
        restart: bool = False,
        dry_run: bool = False,
        handle_signals: bool = False,
    ) -> RunReport:
        """Run (or resume) a feature. `feature` is a key, id or slug."""
        key = self.store.find(feature)
        self._invocations = 0

        if dry_run:
            return self._dry_run(self._load_or_init(key))

        if handle_signals:
            self._install_signal_handlers()
        try:
            with self.store.lock(key):
                return await self._run_locked(key, restart)
        finally:
            if handle_signals:
                self._remove_signal_handlers()

    # --- State machine ---

    async def _run_locked(self, key: str, restart: bool) -> RunReport:
        state = self._load_or_init(key)
        self.logger.info("=" * 60)
        self.logger.info(f"Feature {key} (status: {state.status.value})", extra=_log_context(key))
        self.logger.info("=" * 60)

        if state.status == FeatureStatus.COMPLETED:
            self.logger.info("Feature already completed.")
            return RunReport.from_state(state, RunOutcome.COMPLETED)

        if state.status == FeatureStatus.FAILED and not state.resume.can_resume:
            if not restart:
                self.logger.error(
                    f"Feature failed: {state.error}. Use --restart to run it again."
                )
                return RunReport.from_state(state, RunOutcome.FAILED)
            self.logger.info(f"Restarting from phase {state.phases[state.current_phase].name}")
            state.restart()

        start = state.resume_index()
        if state.resume.can_resume and start < len(state.phases):
            self.logger.info(
                f"Resuming from phase: {state.phase_names[start]}",
                extra=_log_context(key, state.phase_names[start]),
            )

        state.start_execution()
        self.store.save(key, state)

        async with ExecutorActor(self.invoker, default_timeout=self.config.timeout_seconds) as executor:
            for index in range(start, len(state.phases)):
                if self.token.cancelled:
                    return self._interrupt(key, state, None, self.token.reason)
                report = await self._run_phase(key, state, index, executor)
                if report is not None:
                    return report

        state.complete()
        self.store.save(key, state)
        self.logger.info("Feature execution completed!", extra=_log_context(key))
        self.logger.info(
            f"Total: {state.total_stats.turns} turns, "
            f"{state.total_stats.input_tokens}/{state.total_stats.output_tokens} tokens in/out, "
            f"${state.total_stats.cost_usd:.4f}"
        )
        return RunReport.from_state(state, RunOutcome.COMPLETED, invocations=self._invocations)

    async def _run_phase(
        self,
        key: str,
        state: FeatureState,
        index: int,
        executor: ExecutorActor,
    ) -> RunReport | None:
        """Execute one phase. Returns a report if the run must halt."""
        phase = self.config.phases[index]
        state.start_phase(index)
        self.store.save(key, state)
        self.logger.info(
            f"Phase {index + 1}/{len(state.phases)}: {phase.name}",
            extra=_log_context(key, phase.name),
        )

        try:
            prompt = self.renderer.render(phase.template, self._prompt_context(state, index))
        except (TemplateNotFoundError, RenderError) as e:
            return self._fail(key, state, index, str(e))

        request = InvocationRequest(
            prompt=prompt,
            options=InvocationOptions(
                cwd=self.config.repo_path,
                allowed_tools=phase.allowed_tools,
                disallowed_tools=phase.disallowed_tools,
            ),
            phase_name=phase.name,
            timeout_seconds=self.config.timeout_seconds,
        )

        head_before = self.commit_lookup()
        try:
            result = await self._execute_with_retry(key, state, index, request, executor)
        except RunCancelled as e:
            return self._interrupt(key, state, index, e.reason)
        except ExecError as e:
            reason = _RESUMABLE_KINDS.get(e.kind)
            if reason is not None:
                return self._interrupt(key, state, index, reason, e.message)
            return self._fail(key, state, index, e.message)

        head_after = self.commit_lookup()
        external_ref = head_after if head_after and head_after != head_before else None
        state.complete_phase(
            index,
            summarize_output(result.output, self.config.summary_max_chars),
            result.stats,
            external_ref,
        )
        match = PULL_REQUEST_RE.search(result.output)
        if match:
            state.pull_request = PullRequestInfo(url=match.group(0), number=int(match.group(1)))
        self.store.save(key, state)

        cost = f"${result.stats.cost_usd:.4f}" if result.stats.cost_usd else "n/a"
        self.logger.info(
            f"  Phase {phase.name} completed ({result.duration_seconds:.0f}s, "
            f"{result.stats.turns} turns, cost: {cost})",
            extra=_log_context(key, phase.name),
        )
        return None

    async def _execute_with_retry(
        self,
        key: str,
        state: FeatureState,
        index: int,
        request: InvocationRequest,
        executor: ExecutorActor,
    ) -> InvocationResult:
        """Invoke with exponential backoff on retryable errors."""
        record = state.phases[index]
        context = _log_context(key, record.name)
        attempt = 0
        while True:
            attempt += 1
            record.attempts += 1
            self._invocations += 1
            try:
                return await self.token.race(executor.submit(request))
            except ExecError as e:
                # Partial usage of a failed attempt is still accounted for
                state.add_phase_stats(index, e.stats)
                self.store.save(key, state)
                self.logger.warning(
                    f"  Attempt {attempt} of {record.name} failed: {e}", extra=context,
                )

                if not self.retry.should_retry(e, attempt):
                    if self.retry.is_retryable(e):
                        self.logger.error(f"  Exhausted {attempt} attempts.", extra=context)
                    else:
                        self.logger.error("  Non-retryable error. Stopping retries.", extra=context)
                    raise

                delay = self.retry.next_delay(attempt)
                self.logger.info(
                    f"  Retry {attempt}/{self.retry.max_attempts() - 1} for {record.name} "
                    f"(backoff: {delay:.1f}s)",
                    extra=context,
                )
                await self.token.race(self._sleep(delay))

    # --- Halting ---

    def _fail(self, key: str, state: FeatureState, index: int, error: str) -> RunReport:
        state.fail_phase(index, error)
        self.store.save(key, state)
        name = state.phases[index].name
        self.logger.error(f"Phase {name} FAILED: {error}", extra=_log_context(key, name))
        return RunReport.from_state(state, RunOutcome.FAILED, invocations=self._invocations)

    def _interrupt(
        self,
        key: str,
        state: FeatureState,
        index: int | None,
        reason: InterruptReason | None,
        error: str | None = None,
    ) -> RunReport:
        reason = reason or InterruptReason.USER_CANCELLED
        if index is None:
            state.mark_for_resume(reason)
        else:
            state.interrupt_phase(index, reason, error)
        self.store.save(key, state)
        report = RunReport.from_state(state, RunOutcome.INTERRUPTED, invocations=self._invocations)
        self.logger.warning(
            f"Run interrupted ({reason.value}) before completing phase "
            f"{state.resume.next_phase}. Resume with: {report.resume_command}",
            extra=_log_context(key, state.resume.next_phase),
        )
        return report

    # --- Helpers ---

    def _load_or_init(self, key: str) -> FeatureState:
        try:
            state = self.store.load(key)
        except StateNotFoundError:
            feature_id, _, slug = key.partition("_")
            self.logger.info(f"No state for {key}; planning {len(self.config.phases)} phases")
            return FeatureState.new(feature_id, slug or feature_id, self.config.phase_names)

        if not state.phases and state.status == FeatureStatus.PLANNED:
            state = state.model_copy(update={"phases": FeatureState.new(
                state.feature.id, state.feature.slug, self.config.phase_names,
            ).phases})
        if state.phase_names != self.config.phase_names:
            raise ConfigError(
                f"Phases of {key} {state.phase_names} do not match the configured "
                f"phase list {self.config.phase_names}"
            )
        return state

    def _prompt_context(self, state: FeatureState, index: int) -> dict[str, str]:
        phase = self.config.phases[index]
        previous = state.phases[index - 1] if index > 0 else None
        return {
            "feature_id": state.feature.id,
            "feature_slug": state.feature.slug,
            "phase_name": phase.name,
            "phase_description": phase.description,
            "phase_number": str(index + 1),
            "phase_count": str(len(state.phases)),
            "repo_path": str(self.config.repo_path),
            "previous_phase": previous.name if previous else "",
            "previous_output": (previous.output_summary or "") if previous else "",
        }

    def _dry_run(self, state: FeatureState) -> RunReport:
        if state.status == FeatureStatus.COMPLETED:
            to_run: list[str] = []
        else:
            to_run = state.phase_names[state.resume_index():]
        for name in to_run:
            definition = next(p for p in self.config.phases if p.name == name)
            print(f"[dry-run] Would run: {name} -- {definition.description}")
        return RunReport.from_state(state, RunOutcome.DRY_RUN, phases_to_run=to_run)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown_signal, sig)
            except (NotImplementedError, RuntimeError):
                self.logger.debug(f"Cannot install handler for {sig.name}")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def _handle_shutdown_signal(self, sig: signal.Signals) -> None:
        """SIGINT -> user cancelled, SIGTERM -> shutdown. A second signal force-exits."""
        self._signals_received += 1
        if self._signals_received > 1:
            self.logger.warning(f"Second {sig.name} received, force exiting")
            raise SystemExit(1)
        reason = (
            InterruptReason.USER_CANCELLED if sig == signal.SIGINT
            else InterruptReason.SYSTEM_SHUTDOWN
        )
        self.logger.info(f"{sig.name} received, stopping after saving state...")
        self.logger.info("  (press Ctrl-C again to force-quit)")
        self.token.cancel(reason)
