"""
Dialogue engine: owns the transcript and drives the language model per utterance.

One turn:
1. Append the caller's utterance and refresh the current date/time line
2. Stream the model with the full transcript and declared tools
3. On a tool call: speak the tool's acknowledgement, run the tool, record the
   invocation and its result, then stream the model again
4. On plain text: record and emit the final reply

Any failure inside a turn ends it with a short apology; the call keeps going.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional
from zoneinfo import ZoneInfo

import structlog

from src.receptionist.config import get_config
from src.receptionist.llm import (
    LanguageModel,
    ToolCallRequest,
    clean_for_speech,
    get_system_prompt,
)
from src.receptionist.session import Reply, Utterance
from src.receptionist.tools import ToolCall, ToolError, ToolRegistry, result_to_content

logger = structlog.get_logger(__name__)

FALLBACK_REPLY = "I'm sorry, I encountered an error while processing that. Could you please try again?"

_DATETIME_LINE = re.compile(r"^current_datetime: .*$", re.MULTILINE)


class DialogueBusyError(RuntimeError):
    """Raised when an utterance is submitted while a turn is still running."""
    pass


@dataclass
class Turn:
    """One transcript entry."""
    role: str  # system | user | assistant | tool
    content: str = ""
    name: Optional[str] = None
    call_id: Optional[str] = None
    arguments: Optional[dict[str, Any]] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_tool_invocation(self) -> bool:
        return self.role == "assistant" and self.arguments is not None

    @property
    def is_tool_result(self) -> bool:
        return self.role == "tool"

    def to_message(self) -> dict[str, Any]:
        """Chat completions message for this turn."""
        if self.is_tool_invocation:
            return {
                "role": "assistant",
                "content": None,
                "tool_calls": [{
                    "id": self.call_id,
                    "type": "function",
                    "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
                }],
            }
        if self.is_tool_result:
            return {"role": "tool", "tool_call_id": self.call_id, "content": self.content}
        return {"role": self.role, "content": self.content}


class DialogueEngine:
    """
    Per-call dialogue state machine.

    Single-flight: `submit()` raises DialogueBusyError while a turn is running.
    The returned stream must be consumed to completion to release the turn.
    """

    def __init__(
        self,
        model: LanguageModel,
        tools: ToolRegistry,
        config: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.model = model
        self.tools = tools
        self._tz = ZoneInfo(config.clinic_timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._busy = False

        self.transcript: list[Turn] = [
            Turn(role="system", content=get_system_prompt(config)),
            Turn(role="assistant", content=config.greeting),
        ]

    @property
    def busy(self) -> bool:
        return self._busy

    def set_call_context(self, call_sid: str = "", caller: str = "") -> None:
        """Add call-specific system notes to the transcript."""
        if call_sid:
            self.transcript.append(Turn(role="system", content=f"callSid: {call_sid}"))
        if caller:
            self.transcript.append(Turn(
                role="system",
                content=(
                    f"The caller's phone number is {caller}. Let them know they'll receive "
                    "a text message with booking confirmation if they proceed."
                ),
            ))

    def update_current_datetime(self) -> None:
        now = self._clock().strftime("%Y-%m-%d %H:%M:%S")
        system = self.transcript[0]
        line = f"current_datetime: {now} ({self.config.clinic_timezone})"
        if _DATETIME_LINE.search(system.content):
            system.content = _DATETIME_LINE.sub(line, system.content)
        else:
            system.content += f"\n\n{line}"

    def messages(self) -> list[dict[str, Any]]:
        return [turn.to_message() for turn in self.transcript]

    def submit(self, utterance: Utterance, turn_index: int = 0) -> AsyncIterator[Reply]:
        """
        Start a turn for one utterance.

        Raises:
            DialogueBusyError: a previous turn is still in progress
        """
        if self._busy:
            logger.warning(
                "Dropping utterance, dialogue turn in progress",
                sequence=utterance.sequence,
                text=utterance.text[:50],
            )
            raise DialogueBusyError("A dialogue turn is already in progress")

        self._busy = True
        return self._run_turn(utterance, turn_index)

    async def _run_turn(self, utterance: Utterance, turn_index: int) -> AsyncIterator[Reply]:
        try:
            self.update_current_datetime()
            self.transcript.append(Turn(role="user", content=utterance.text))
            logger.info("Dialogue turn started", turn=turn_index, text=utterance.text[:80])

            failed = False
            answered = False
            try:
                async for reply in self._generate(turn_index):
                    answered = reply.is_final
                    yield reply
                if answered:
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failed = True
                logger.error(
                    "Dialogue turn failed",
                    turn=turn_index,
                    error_type=type(e).__name__,
                    error=str(e),
                )

            if not failed:
                logger.warning("Dialogue turn ended without a reply", turn=turn_index)
            self.transcript.append(Turn(role="assistant", content=FALLBACK_REPLY))
            yield Reply(text=FALLBACK_REPLY, turn_index=turn_index)
        finally:
            self._busy = False

    async def _generate(self, turn_index: int) -> AsyncIterator[Reply]:
        rounds = 0
        while True:
            text_parts: list[str] = []
            request: Optional[ToolCallRequest] = None

            async for event in self.model.stream(self.messages(), self.tools.declarations()):
                if isinstance(event, ToolCallRequest):
                    request = event
                else:
                    text_parts.append(event.text)

            if request is None:
                text = clean_for_speech("".join(text_parts))
                if not text:
                    return
                self.transcript.append(Turn(role="assistant", content=text))
                logger.info("Dialogue reply", turn=turn_index, text=text[:80], tool_rounds=rounds)
                yield Reply(text=text, turn_index=turn_index)
                return

            rounds += 1
            if rounds > self.config.max_tool_rounds:
                logger.warning(
                    "Tool call limit reached",
                    turn=turn_index,
                    max_tool_rounds=self.config.max_tool_rounds,
                    tool=request.name,
                )
                return

            if request.name not in self.tools:
                raise ToolError(f"Unknown tool: {request.name}")

            call = ToolCall(name=request.name, arguments=request.arguments)
            if request.call_id:
                call.call_id = request.call_id

            yield Reply(
                text=clean_for_speech(self.tools.ack_text(call.name)),
                turn_index=turn_index,
                is_final=False,
            )

            self.transcript.append(Turn(
                role="assistant",
                name=call.name,
                call_id=call.call_id,
                arguments=call.arguments,
            ))
            try:
                result = await self.tools.invoke(call)
            except ToolError as e:
                self.transcript.append(Turn(
                    role="tool",
                    name=call.name,
                    call_id=call.call_id,
                    content=result_to_content({"status": "error", "message": str(e)}),
                ))
                raise

            self.transcript.append(Turn(
                role="tool",
                name=call.name,
                call_id=call.call_id,
                content=result_to_content(result),
            ))
