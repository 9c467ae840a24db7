"""ExecutorActor: one agent invocation at a time behind a request queue."""

from __future__ import annotations

import asyncio
import logging
import time

from .agent import ExecutionFailed, InvocationEvent, Invoker, TextChunk, Usage
from .errors import ErrorKind, ExecError
from .models import InvocationRequest, InvocationResult, Stats
from .retry import classify_error_message

logger = logging.getLogger("gba")

_STOP = object()


class ExecutorActor:
    """Serializes invocations of an Invoker through a single worker task.

    Callers `await actor.submit(request)`; the worker runs requests in
    arrival order, one in flight, each under its own timeout. A timeout
    abandons the invocation but leaves the actor usable. After `shutdown()`
    every new submit fails fast with ExecError(SHUTDOWN).
    """

    def __init__(self, invoker: Invoker, default_timeout: float | None = None):
        self.invoker = invoker
        self.default_timeout = default_timeout
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._current: asyncio.Future | None = None
        self._closed = False

    async def __aenter__(self) -> ExecutorActor:
        self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown(abandon=exc_info[0] is not None)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._worker is None:
            self._worker = asyncio.create_task(self._run(), name="gba-executor")

    async def submit(self, request: InvocationRequest) -> InvocationResult:
        if self._closed:
            raise ExecError(ErrorKind.SHUTDOWN, "executor is shut down")
        self.start()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self._queue.put((request, future))
        try:
            return await future
        except asyncio.CancelledError:
            # Caller gave up; abandon the invocation if it is ours
            if self._current is future and self._inflight is not None:
                self._inflight.cancel()
            raise

    async def shutdown(self, abandon: bool = False) -> None:
        """Reject new work; let the in-flight request finish unless abandoning."""
        if self._closed and self._worker is None:
            return
        self._closed = True

        # Reject everything still queued
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not _STOP:
                _, future = item
                if not future.done():
                    future.set_exception(ExecError(ErrorKind.SHUTDOWN, "executor is shut down"))

        if abandon and self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()

        if self._worker is not None:
            await self._queue.put(_STOP)
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

    # --- Worker ---

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            request, future = item
            if future.done():
                continue
            if self._closed:
                future.set_exception(ExecError(ErrorKind.SHUTDOWN, "executor is shut down"))
                continue

            self._current = future
            self._inflight = asyncio.create_task(self._invoke_with_timeout(request))
            try:
                result = await asyncio.shield(self._inflight)
            except asyncio.CancelledError:
                if not self._inflight.cancelled():
                    # The worker itself is being cancelled
                    self._inflight.cancel()
                    if not future.done():
                        future.set_exception(ExecError(ErrorKind.CANCELLED, "executor stopped"))
                    raise
                if not future.done():
                    future.set_exception(ExecError(ErrorKind.CANCELLED, "invocation abandoned"))
            except ExecError as e:
                if not future.done():
                    future.set_exception(e)
            except Exception as e:
                # Raised before the stream was opened, so there is no usage to keep
                logger.error(f"Invoker failed: {type(e).__name__}: {e}")
                if not future.done():
                    future.set_exception(ExecError(
                        classify_error_message(str(e)), f"{type(e).__name__}: {e}",
                    ))
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._inflight = None
                self._current = None

    async def _invoke_with_timeout(self, request: InvocationRequest) -> InvocationResult:
        timeout = request.timeout_seconds or self.default_timeout
        start = time.monotonic()
        collected: dict = {"stats": None}
        try:
            if timeout is None:
                output = await self._collect(request, collected)
            else:
                output = await asyncio.wait_for(self._collect(request, collected), timeout)
        except asyncio.TimeoutError:
            raise ExecError(
                ErrorKind.TIMEOUT,
                f"invocation timed out after {timeout:.0f}s",
                stats=collected["stats"],
            ) from None
        return InvocationResult(
            output=output,
            stats=collected["stats"] or Stats(),
            duration_seconds=time.monotonic() - start,
        )

    async def _collect(self, request: InvocationRequest, collected: dict) -> str:
        """Drain the event stream into output text; usage goes to `collected`."""
        parts: list[str] = []
        stream = self.invoker(request.prompt, request.options)
        try:
            async for event in stream:
                failure = self._apply(event, parts, collected)
                if failure is not None:
                    raise ExecError(failure.kind, failure.message, stats=collected["stats"])
        except ExecError as e:
            if e.stats is None and collected["stats"] is not None:
                e.stats = collected["stats"]
            raise
        except Exception as e:
            logger.error(f"Invocation crashed: {type(e).__name__}: {e}")
            raise ExecError(
                classify_error_message(str(e)),
                f"{type(e).__name__}: {e}",
                stats=collected["stats"],
            ) from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(parts)

    @staticmethod
    def _apply(
        event: InvocationEvent, parts: list[str], collected: dict,
    ) -> ExecutionFailed | None:
        if isinstance(event, TextChunk):
            parts.append(event.text)
        elif isinstance(event, Usage):
            collected["stats"] = event.stats
        elif isinstance(event, ExecutionFailed):
            return event
        return None
