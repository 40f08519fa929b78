"""Continuation engine: assemble one logical answer from length-capped completions.

A single completion call stops at the token ceiling and reports
``finish_reason == "length"``. The engine keeps calling the gateway, each time
sending everything produced so far as the content of a trailing assistant turn
(the "prefill"), so the model resumes mid-answer instead of restarting. The loop
is driven by the finish reason only, never by the shape of the content.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .llm import CompletionGateway
from .models import ChatMessage, ContinuationResult, StreamDelta

logger = logging.getLogger(__name__)

LENGTH_FINISH_REASON = "length"
DEFAULT_MAX_LOOPS = 20
EMPTY_FIRST_ROUND_HINT = "\n\nPlease produce the full content now, completely and without omissions."

DeltaObserver = Callable[[StreamDelta], None]
RoundObserver = Callable[[int, str], None]


class ContinuationEngine:
    """Drive sequential gateway rounds until the model reports it is done."""

    def __init__(
        self,
        *,
        gateway: CompletionGateway,
        model: str,
        max_tokens: int = 32768,
        temperature: float = 0.7,
        max_loops: int = DEFAULT_MAX_LOOPS,
        round_delay_s: float = 0.0,
    ) -> None:
        if max_loops < 1:
            raise ValueError("max_loops must be >= 1")
        self.gateway = gateway
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.max_loops = max_loops
        self.round_delay_s = max(0.0, round_delay_s)

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float | None = None,
        on_delta: DeltaObserver | None = None,
        on_round: RoundObserver | None = None,
    ) -> ContinuationResult:
        """Return the concatenated text of all rounds.

        Gateway errors propagate unchanged; the caller owns fallback.
        ``on_delta`` sees every streamed delta, ``on_round`` is told the round
        number and that round's text once it finishes.
        """
        conversation = [
            ChatMessage(role="system", content=system_prompt),
            ChatMessage(role="user", content=user_prompt),
            ChatMessage(role="assistant", content=""),
        ]
        user_turn = conversation[-2]
        assistant_turn = conversation[-1]
        effective_temperature = self.temperature if temperature is None else temperature

        chunks: list[str] = []
        finish_reason: str | None = None
        rounds = 0

        while True:
            rounds += 1
            current_chunk, finish_reason = await self._stream_round(
                conversation, effective_temperature, on_delta
            )
            chunks.append(current_chunk)
            assistant_turn.content += current_chunk
            logger.info(
                "continuation event=round_complete round=%d chars=%d finish_reason=%s",
                rounds,
                len(current_chunk),
                finish_reason,
            )
            if on_round is not None:
                on_round(rounds, current_chunk)

            if rounds == 1 and not current_chunk and self.max_loops > 1:
                assistant_turn.content = ""
                user_turn.content += EMPTY_FIRST_ROUND_HINT
                logger.warning("continuation event=empty_first_round action=retry_with_hint")
                await self._pace()
                continue

            if finish_reason != LENGTH_FINISH_REASON and current_chunk.strip():
                stopped_by = "finished"
                break
            if rounds >= self.max_loops:
                logger.warning(
                    "continuation event=max_loops_reached max_loops=%d chars=%d",
                    self.max_loops,
                    sum(len(chunk) for chunk in chunks),
                )
                stopped_by = "max_loops"
                break
            if not current_chunk:
                logger.warning("continuation event=empty_round round=%d action=stop", rounds)
                stopped_by = "empty"
                break

            await self._pace()

        return ContinuationResult(
            text="".join(chunks),
            rounds=rounds,
            finish_reason=finish_reason,
            stopped_by=stopped_by,
        )

    async def complete_once(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float | None = None,
    ) -> ContinuationResult:
        """Single non-streaming call with no continuation."""
        response = await self.gateway.complete(
            [
                ChatMessage(role="system", content=system_prompt),
                ChatMessage(role="user", content=user_prompt),
            ],
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature if temperature is None else temperature,
        )
        if response.usage is not None:
            logger.info(
                "continuation event=single_shot prompt_tokens=%d completion_tokens=%d",
                response.usage.prompt_tokens,
                response.usage.completion_tokens,
            )
        return ContinuationResult(
            text=response.content,
            rounds=1,
            finish_reason=response.finish_reason,
            stopped_by="finished" if response.content else "empty",
        )

    async def _stream_round(
        self,
        conversation: list[ChatMessage],
        temperature: float,
        on_delta: DeltaObserver | None,
    ) -> tuple[str, str | None]:
        # Snapshot: the trailing assistant turn is mutated between rounds.
        messages = [message.model_copy() for message in conversation]
        parts: list[str] = []
        finish_reason: str | None = None
        async for delta in self.gateway.stream(
            messages,
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=temperature,
        ):
            if delta.content:
                parts.append(delta.content)
            if delta.finish_reason:
                finish_reason = delta.finish_reason
            if on_delta is not None:
                on_delta(delta)
        return "".join(parts), finish_reason

    async def _pace(self) -> None:
        if self.round_delay_s > 0:
            await asyncio.sleep(self.round_delay_s)
