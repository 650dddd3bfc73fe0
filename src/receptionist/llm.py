"""
OpenAI chat model wrapper with streaming tool calling.

Provides:
- Startup model validation
- Streaming responses as text deltas or a single tool call request
- The receptionist system prompt
- Speech cleanup for model text (no Markdown reaches the synthesizer)
"""

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import httpx
import structlog
from openai import AsyncOpenAI

from src.receptionist.config import get_config

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class ToolArgumentsError(ValueError):
    """Raised when tool-call arguments cannot be recovered as an object."""
    pass


@dataclass
class TextDelta:
    """A chunk of assistant text."""
    text: str


@dataclass
class ToolCallRequest:
    """A complete tool call signalled by the model stream."""
    name: str
    arguments: Dict[str, Any]
    call_id: str = ""


ModelEvent = Union[TextDelta, ToolCallRequest]


class LanguageModel(ABC):
    """Interface the dialogue engine expects from a chat model."""

    @abstractmethod
    def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> AsyncIterator[ModelEvent]:
        raise NotImplementedError


# Compatibility shim for malformed tool arguments.
#
# The model occasionally streams several JSON objects back to back for one call
# (e.g. `{"slots": [...]}{"doctor": "Dr. Ali"}`). They are merged by shallow key
# union, concatenating list values present in more than one object. Everything
# past this function works with a well-formed dict.
def parse_tool_arguments(raw: str) -> Dict[str, Any]:
    raw = (raw or "").strip()
    if not raw:
        return {}

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = None
    else:
        if isinstance(parsed, dict):
            return parsed
        raise ToolArgumentsError(f"Tool arguments are not an object: {raw[:80]}")

    logger.warning("Multiple tool argument objects returned by model", arguments=raw[:200])

    decoder = json.JSONDecoder()
    objects: List[Dict[str, Any]] = []
    index = 0
    while index < len(raw):
        start = raw.find("{", index)
        if start == -1:
            break
        try:
            obj, end = decoder.raw_decode(raw, start)
        except json.JSONDecodeError:
            index = start + 1
            continue
        if isinstance(obj, dict):
            objects.append(obj)
        index = end

    if not objects:
        raise ToolArgumentsError("Unable to parse function arguments")

    merged: Dict[str, Any] = {}
    for obj in objects:
        for key, value in obj.items():
            if isinstance(merged.get(key), list) and isinstance(value, list):
                merged[key] = merged[key] + value
            else:
                merged[key] = value
    return merged


_MARKDOWN_PATTERNS = (
    (re.compile(r"```[\s\S]*?```"), ""),
    (re.compile(r"(\*\*|__)(.*?)\1"), r"\2"),
    (re.compile(r"(\*|_)(.*?)\1"), r"\2"),
    (re.compile(r"^#+\s*", re.MULTILINE), ""),
    (re.compile(r"^[-*+]\s+", re.MULTILINE), ""),
    (re.compile(r"^\d+\.\s+", re.MULTILINE), ""),
    (re.compile(r"`([^`]+)`"), r"\1"),
    (re.compile(r"^(-{3,}|_{3,}|\*{3,})$", re.MULTILINE), ""),
    (re.compile(r"^>\s+", re.MULTILINE), ""),
)


def clean_for_speech(text: str) -> str:
    """Strip Markdown so replies read naturally when synthesized."""
    if not isinstance(text, str):
        return ""
    for pattern, replacement in _MARKDOWN_PATTERNS:
        text = pattern.sub(replacement, text)
    return text.strip()


def get_system_prompt(config: Optional[Any] = None) -> str:
    """
    Get the system prompt for the receptionist.

    The `current_datetime` line is refreshed by the dialogue engine every turn.
    """
    if config is None:
        config = get_config()

    return f"""You are {config.agent_name}, a friendly and efficient hospital representative from {config.hospital_name}. Your primary goal is to help patients book appointments and to answer questions about the hospital's services. Use a warm, empathetic and professional tone.

DATES AND TIMES:
- Always use the current date and time given in the current_datetime line below when talking about "today" or "now".
- All times are in the {config.clinic_timezone} timezone. Make sure patients know this.
- Only suggest appointment times in the future. All meetings are 30 minutes long.
- All doctors work 9am to 5pm on day shift and 9pm to 5am on night shift.

SPEECH:
- Your replies are converted directly to speech. Never use Markdown, asterisks, hashes, bullet points or numbered lists.
- Keep replies to two or three short sentences. Get straight to the point.
- Say lists of times conversationally, like "9am, or 10am, or 11am".

BOOKING FLOW:
1. Ask about the medical concern or the kind of appointment needed.
2. Ask once about language or gender preferences for the doctor.
3. Use recommendDoctor with the most appropriate department.
4. Ask for a preferred date and time.
5. Use checkAvailability with several slots around the preferred time in a single call. Offer alternativeSlots when a slot is taken.
6. Once a slot is confirmed, ask for the patient's email and confirm it by spelling the part before the @ letter by letter (no phonetic alphabet). Common domains like gmail.com are said as is.
7. Use bookMeeting only after the slot and the email are both confirmed.
8. After booking, reconfirm the details, then ask two survey questions on a scale of 1 to 5: the quality and speed of the call, and how well their needs were understood. Save the answers with saveUserRating and thank them.

current_datetime: unknown"""


async def validate_openai_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured OpenAI model exists.

    Calls GET https://api.openai.com/v1/models/{model} to check.

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating OpenAI model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{OPENAI_BASE_URL}/models/{model_name}",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to OpenAI API", error=str(e))
            raise SystemExit(
                f"Failed to connect to OpenAI API: {e}\n"
                "Check your network connection and OPENAI_API_KEY."
            )

    if response.status_code == 404:
        logger.error("OpenAI model not found", requested_model=model_name)
        raise SystemExit(
            f"OPENAI_MODEL '{model_name}' not found.\n"
            "Please update OPENAI_MODEL in your .env file."
        )
    if response.status_code != 200:
        logger.error(
            "Failed to fetch OpenAI model",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate OpenAI model. API returned status {response.status_code}. "
            "Check your OPENAI_API_KEY."
        )

    logger.info("OpenAI model validated successfully", model=model_name)
    return True


class OpenAIChatModel(LanguageModel):
    """
    OpenAI chat completions client with streaming tool calls.

    One tool call per response (`parallel_tool_calls` off); tools run one at a
    time.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.openai_model
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key)

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_openai_model(self.config.openai_api_key, self.model)

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
    ) -> AsyncIterator[ModelEvent]:
        """
        Stream one model response.

        Yields:
            TextDelta chunks as they arrive, or one ToolCallRequest once the
            stream finishes with a tool call.

        Raises:
            ToolArgumentsError: tool arguments could not be recovered
        """
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "stream": True,
        }
        if tools:
            request["tools"] = tools
            request["parallel_tool_calls"] = False

        stream = await self._client.chat.completions.create(**request)

        function_name = ""
        function_args = ""
        call_id = ""
        finish_reason = None

        async for chunk in stream:
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if choice.finish_reason:
                finish_reason = choice.finish_reason

            if delta is None:
                continue

            if delta.tool_calls:
                tool_delta = delta.tool_calls[0]
                if tool_delta.id:
                    call_id = tool_delta.id
                if tool_delta.function is not None:
                    if tool_delta.function.name:
                        function_name = tool_delta.function.name
                    if tool_delta.function.arguments:
                        function_args += tool_delta.function.arguments
            elif delta.content:
                yield TextDelta(text=delta.content)

        if finish_reason == "tool_calls" or (function_name and finish_reason is None):
            yield ToolCallRequest(
                name=function_name,
                arguments=parse_tool_arguments(function_args),
                call_id=call_id,
            )
