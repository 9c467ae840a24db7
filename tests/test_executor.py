"""Tests for the serialized executor actor."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from fakes import HANG, FakeInvoker, fail, usage
from gba.agent import TextChunk, Usage
from gba.errors import ErrorKind, ExecError
from gba.executor import ExecutorActor
from gba.models import InvocationOptions, InvocationRequest


def _request(phase: str, timeout: float | None = None) -> InvocationRequest:
    return InvocationRequest(prompt=f"phase={phase}\nprevious=", timeout_seconds=timeout)


class OverlapTracker:
    """Invoker that tracks how many invocations overlap."""

    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.order: list[str] = []

    async def __call__(self, prompt: str, options: InvocationOptions):
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.order.append(prompt)
        try:
            await asyncio.sleep(0.01)
            yield TextChunk(text=prompt)
            yield Usage(stats=usage())
        finally:
            self.active -= 1


class TestSubmit:
    @pytest.mark.asyncio
    async def test_accumulates_text_and_usage(self):
        invoker = FakeInvoker({"A": [
            [TextChunk(text="Hello, "), TextChunk(text="world"), Usage(stats=usage(turns=2))],
        ]})
        async with ExecutorActor(invoker) as executor:
            result = await executor.submit(_request("A"))

        assert result.output == "Hello, world"
        assert result.stats.turns == 2
        assert result.duration_seconds >= 0

    @pytest.mark.asyncio
    async def test_failure_carries_partial_stats(self):
        invoker = FakeInvoker({"A": [fail(ErrorKind.RATE_LIMITED, "429", stats=usage(turns=3))]})
        async with ExecutorActor(invoker) as executor:
            with pytest.raises(ExecError) as excinfo:
                await executor.submit(_request("A"))

        assert excinfo.value.kind == ErrorKind.RATE_LIMITED
        assert excinfo.value.stats.turns == 3

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_classified(self):
        invoker = FakeInvoker({"A": [[ConnectionError("connection refused")]]})
        async with ExecutorActor(invoker) as executor:
            with pytest.raises(ExecError) as excinfo:
                await executor.submit(_request("A"))
        assert excinfo.value.kind == ErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_crash_after_usage_keeps_partial_stats(self):
        invoker = FakeInvoker({"A": [
            [Usage(stats=usage(turns=2, cost="0.02")), RuntimeError("connection reset by peer")],
        ]})
        async with ExecutorActor(invoker) as executor:
            with pytest.raises(ExecError) as excinfo:
                await executor.submit(_request("A"))

        assert excinfo.value.kind == ErrorKind.NETWORK
        assert "RuntimeError" in excinfo.value.message
        assert excinfo.value.stats.turns == 2
        assert excinfo.value.stats.cost_usd == Decimal("0.02")

    @pytest.mark.asyncio
    async def test_timeout_leaves_actor_usable(self):
        invoker = FakeInvoker({"A": [HANG]})
        async with ExecutorActor(invoker) as executor:
            with pytest.raises(ExecError) as excinfo:
                await executor.submit(_request("A", timeout=0.05))
            assert excinfo.value.kind == ErrorKind.TIMEOUT

            result = await executor.submit(_request("B"))
        assert result.output == "B done"
        assert invoker.cancelled == ["A"]

    @pytest.mark.asyncio
    async def test_runs_one_invocation_at_a_time(self):
        tracker = OverlapTracker()
        async with ExecutorActor(tracker) as executor:
            results = await asyncio.gather(*(
                executor.submit(_request(name)) for name in ("A", "B", "C", "D")
            ))

        assert tracker.peak == 1
        assert [r.output for r in results] == [f"phase={n}\nprevious=" for n in "ABCD"]
        assert tracker.order == [r.output for r in results]

    @pytest.mark.asyncio
    async def test_cancelled_caller_abandons_invocation(self):
        invoker = FakeInvoker({"A": [HANG]})
        async with ExecutorActor(invoker) as executor:
            task = asyncio.create_task(executor.submit(_request("A")))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            result = await executor.submit(_request("B"))
        assert result.output == "B done"
        assert invoker.cancelled == ["A"]


class TestShutdown:
    @pytest.mark.asyncio
    async def test_submit_after_shutdown_fails_fast(self):
        executor = ExecutorActor(FakeInvoker())
        executor.start()
        await executor.shutdown()

        assert executor.closed
        with pytest.raises(ExecError) as excinfo:
            await executor.submit(_request("A"))
        assert excinfo.value.kind == ErrorKind.SHUTDOWN

    @pytest.mark.asyncio
    async def test_shutdown_rejects_queued_work(self):
        invoker = FakeInvoker({"A": [HANG]})
        executor = ExecutorActor(invoker)
        first = asyncio.create_task(executor.submit(_request("A")))
        queued = asyncio.create_task(executor.submit(_request("B")))
        await asyncio.sleep(0.01)

        await executor.shutdown(abandon=True)

        with pytest.raises(ExecError) as excinfo:
            await queued
        assert excinfo.value.kind == ErrorKind.SHUTDOWN
        with pytest.raises(ExecError) as excinfo:
            await first
        assert excinfo.value.kind == ErrorKind.CANCELLED
        assert invoker.calls == ["A"]

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_inflight(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def gated(prompt, options):
            started.set()
            await release.wait()
            yield TextChunk(text="slow but fine")

        executor = ExecutorActor(gated)
        pending = asyncio.create_task(executor.submit(_request("A")))
        await started.wait()

        closing = asyncio.create_task(executor.shutdown())
        await asyncio.sleep(0.01)
        assert not closing.done()

        release.set()
        await closing
        assert (await pending).output == "slow but fine"
