"""Spoken-reply producers and speech-to-text.

The conversation loop hands a finished message list to a
``SpeechSynthesizer`` and relays whatever it streams back: transcript text
and base64 PCM16 audio, fragment by fragment.

``OpenAISpeech`` uses an audio-capable chat completions model, which both
phrases the reply and speaks it.  ``TranscriptOnlySpeech`` streams the
reply text from the chat model with no audio, for local runs without an
OpenAI key.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any, NamedTuple, Protocol

from langchain_core.messages import AIMessage, AnyMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from voice_scheduler import config
from voice_scheduler.services.metrics import metrics

logger = logging.getLogger(__name__)

SAY_SYSTEM_PROMPT = "You are a helpful voice assistant. Speak naturally."


class SpeechFragment(NamedTuple):
    transcript: str
    audio: str  # base64 PCM16, "" when there is none


class SpeechSynthesizer(Protocol):
    def stream_reply(self, messages: Sequence[AnyMessage]) -> AsyncIterator[SpeechFragment]: ...

    def stream_say(self, text: str) -> AsyncIterator[SpeechFragment]: ...

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str: ...


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a string or content blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _to_openai_messages(messages: Sequence[AnyMessage]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for message in messages:
        if isinstance(message, SystemMessage):
            converted.append({"role": "system", "content": message_text(message)})
        elif isinstance(message, HumanMessage):
            converted.append({"role": "user", "content": message_text(message)})
        elif isinstance(message, ToolMessage):
            converted.append({
                "role": "tool",
                "tool_call_id": message.tool_call_id,
                "content": message_text(message),
            })
        elif isinstance(message, AIMessage):
            entry: dict[str, Any] = {"role": "assistant", "content": message_text(message) or None}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call["id"],
                        "type": "function",
                        "function": {"name": call["name"], "arguments": json.dumps(call["args"])},
                    }
                    for call in message.tool_calls
                ]
            converted.append(entry)
    return converted


def _audio_delta(delta: Any) -> tuple[str, str]:
    """Pull (transcript, data) out of a streamed audio delta, dict or object."""
    audio = getattr(delta, "audio", None)
    if audio is None and getattr(delta, "model_extra", None):
        audio = delta.model_extra.get("audio")
    if not audio:
        return "", ""
    if isinstance(audio, dict):
        return audio.get("transcript") or "", audio.get("data") or ""
    return getattr(audio, "transcript", None) or "", getattr(audio, "data", None) or ""


# ── OpenAI audio replies ────────────────────────────────────────────


class OpenAISpeech:
    """Streams spoken replies from an audio-output chat model."""

    def __init__(self, client=None, *, model: str | None = None, voice: str | None = None) -> None:
        if client is None:
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=config.OPENAI_API_KEY, timeout=config.LLM_TIMEOUT_SECONDS)
        self._client = client
        self._model = model or config.SPEECH_MODEL_NAME
        self._voice = voice or config.SPEECH_VOICE

    async def _stream(self, messages: list[dict[str, Any]], operation: str) -> AsyncIterator[SpeechFragment]:
        with metrics.track("openai", operation):
            stream = await self._client.chat.completions.create(
                model=self._model,
                modalities=["text", "audio"],
                audio={"voice": self._voice, "format": "pcm16"},
                messages=messages,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                transcript, data = _audio_delta(chunk.choices[0].delta)
                if transcript or data:
                    yield SpeechFragment(transcript, data)

    async def stream_reply(self, messages: Sequence[AnyMessage]) -> AsyncIterator[SpeechFragment]:
        async for fragment in self._stream(_to_openai_messages(messages), "speech_reply"):
            yield fragment

    async def stream_say(self, text: str) -> AsyncIterator[SpeechFragment]:
        messages = [
            {"role": "system", "content": SAY_SYSTEM_PROMPT},
            {"role": "user", "content": f"Please say the following naturally: {text}"},
        ]
        async for fragment in self._stream(messages, "speech_say"):
            yield fragment

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str:
        with metrics.track("openai", "transcribe"):
            result = await self._client.audio.transcriptions.create(
                model=config.TRANSCRIPTION_MODEL_NAME,
                file=(filename, audio),
            )
        text = (getattr(result, "text", None) or "").strip()
        logger.debug("Transcribed %d bytes into %d chars", len(audio), len(text))
        return text


# ── Text-only fallback ──────────────────────────────────────────────


class TranscriptOnlySpeech:
    """Streams the reply text from the chat model; never produces audio.

    *llm* must be the tool-bound model: the history it is given carries
    tool calls, and Anthropic rejects those without tool definitions.
    """

    def __init__(self, llm) -> None:
        self._llm = llm

    async def stream_reply(self, messages: Sequence[AnyMessage]) -> AsyncIterator[SpeechFragment]:
        with metrics.track("anthropic", "speech_reply"):
            async for chunk in self._llm.astream(list(messages)):
                text = message_text(chunk)
                if text:
                    yield SpeechFragment(text, "")

    async def stream_say(self, text: str) -> AsyncIterator[SpeechFragment]:
        yield SpeechFragment(text, "")

    async def transcribe(self, audio: bytes, filename: str = "audio.webm") -> str:
        raise RuntimeError("Speech-to-text requires OPENAI_API_KEY to be set")


def build_speech(llm) -> SpeechSynthesizer:
    """OpenAI audio when a key is configured, text-only otherwise."""
    if config.OPENAI_API_KEY:
        return OpenAISpeech()
    logger.info("OPENAI_API_KEY not set; replies will be text only")
    return TranscriptOnlySpeech(llm)
