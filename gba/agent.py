"""Agent invocation: streamed event types and the Claude Agent SDK invoker."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from decimal import Decimal
from typing import Protocol, Union

from pydantic import BaseModel

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ClaudeSDKError,
    CLIConnectionError,
    CLINotFoundError,
    ResultMessage,
    SystemMessage,
    TextBlock,
)

from .errors import ErrorKind, ExecError
from .models import InvocationOptions, Stats
from .retry import classify_error_message

logger = logging.getLogger("gba")


class TextChunk(BaseModel):
    text: str


class Usage(BaseModel):
    """Cumulative usage for the invocation so far. The last one wins."""

    stats: Stats


class ExecutionFailed(BaseModel):
    """Terminal error event. Ends the stream."""

    kind: ErrorKind
    message: str


InvocationEvent = Union[TextChunk, Usage, ExecutionFailed]


class Invoker(Protocol):
    """invoke(prompt, options) -> stream of events; exhaustion means success."""

    def __call__(self, prompt: str, options: InvocationOptions) -> AsyncIterator[InvocationEvent]:
        ...


def _result_stats(message: ResultMessage) -> Stats:
    usage = message.usage or {}
    cost = message.total_cost_usd
    return Stats(
        turns=message.num_turns or 0,
        input_tokens=int(usage.get("input_tokens", 0) or 0),
        output_tokens=int(usage.get("output_tokens", 0) or 0),
        cost_usd=Decimal(str(cost)) if cost is not None else Decimal("0"),
    )


class ClaudeInvoker:
    """Runs one prompt through ClaudeSDKClient and streams events back."""

    def __init__(self, defaults: InvocationOptions | None = None):
        self.defaults = defaults or InvocationOptions()

    def _build_options(self, options: InvocationOptions) -> ClaudeAgentOptions:
        merged = self.defaults.model_copy(
            update=options.model_dump(exclude_unset=True, exclude_none=True)
        )
        kwargs: dict = {
            "model": merged.model,
            "max_turns": merged.max_turns,
            "allowed_tools": merged.allowed_tools,
            "disallowed_tools": merged.disallowed_tools,
            "setting_sources": ["project"],
        }
        if merged.permission_mode:
            kwargs["permission_mode"] = merged.permission_mode
        if merged.cwd is not None:
            kwargs["cwd"] = str(merged.cwd)
        if merged.system_prompt:
            kwargs["system_prompt"] = merged.system_prompt
        else:
            kwargs["system_prompt"] = {"type": "preset", "preset": "claude_code"}
        return ClaudeAgentOptions(**kwargs)

    async def __call__(
        self, prompt: str, options: InvocationOptions,
    ) -> AsyncIterator[InvocationEvent]:
        try:
            async with ClaudeSDKClient(self._build_options(options)) as client:
                await client.query(prompt)
                async for message in client.receive_messages():
                    if isinstance(message, SystemMessage) and message.subtype == "init":
                        logger.info(f"  Session started (id: {message.data.get('session_id')})")

                    if isinstance(message, AssistantMessage):
                        for block in message.content:
                            if isinstance(block, TextBlock):
                                _log_assistant_text(block.text)
                                yield TextChunk(text=block.text)

                    if isinstance(message, ResultMessage):
                        yield Usage(stats=_result_stats(message))
                        if message.is_error:
                            error = message.result or message.subtype or "agent reported an error"
                            yield ExecutionFailed(
                                kind=classify_error_message(error),
                                message=error,
                            )
                        break
        except CLINotFoundError as e:
            raise ExecError(ErrorKind.INVALID_REQUEST, str(e)) from e
        except CLIConnectionError as e:
            raise ExecError(ErrorKind.NETWORK, str(e)) from e
        except ClaudeSDKError as e:
            raise ExecError(classify_error_message(str(e)), f"{type(e).__name__}: {e}") from e


def _log_assistant_text(text: str) -> None:
    """Log the first meaningful line of assistant text as progress."""
    for line in text.split("\n"):
        line = line.strip()
        if line:
            if len(line) > 120:
                line = line[:117] + "..."
            logger.info(f"  Claude: {line}")
            break
    logger.debug(f"  [full text] {text[:500]}")
