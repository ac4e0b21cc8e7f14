"""Tests for the speech collaborators."""

from __future__ import annotations

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk, HumanMessage, SystemMessage, ToolMessage

from voice_scheduler.speech import (
    OpenAISpeech,
    SpeechFragment,
    TranscriptOnlySpeech,
    _to_openai_messages,
    message_text,
)


async def _collect(fragments) -> list[SpeechFragment]:
    return [fragment async for fragment in fragments]


def _chunk(audio):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(audio=audio))])


class _FakeStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)


def _make_openai_client(chunks):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=_FakeStream(chunks))
    return client


class TestMessageConversion:
    def test_text_of_block_content(self):
        message = AIMessage(content=[{"type": "text", "text": "Sure, "}, {"type": "tool_use", "id": "x"}, "done"])
        assert message_text(message) == "Sure, done"

    def test_tool_round_trip_shape(self):
        messages = [
            SystemMessage(content="sys"),
            HumanMessage(content="book it"),
            AIMessage(
                content="",
                tool_calls=[{"id": "call_1", "name": "fetch_slots", "args": {"date": "2026-01-28"}}],
            ),
            ToolMessage(content="Available slots: ...", tool_call_id="call_1"),
        ]
        converted = _to_openai_messages(messages)

        assert [m["role"] for m in converted] == ["system", "user", "assistant", "tool"]
        call = converted[2]["tool_calls"][0]
        assert call["id"] == "call_1"
        assert call["function"]["name"] == "fetch_slots"
        assert json.loads(call["function"]["arguments"]) == {"date": "2026-01-28"}
        assert converted[2]["content"] is None
        assert converted[3]["tool_call_id"] == "call_1"


class TestOpenAISpeech:
    @pytest.mark.asyncio
    async def test_stream_reply_yields_transcript_and_audio(self):
        client = _make_openai_client([
            _chunk({"transcript": "Your ", "data": "AAA="}),
            _chunk(None),
            _chunk(SimpleNamespace(transcript="booking is set.", data=None)),
            SimpleNamespace(choices=[]),
        ])
        speech = OpenAISpeech(client, model="gpt-audio", voice="alloy")

        fragments = await _collect(speech.stream_reply([HumanMessage(content="hi")]))

        assert fragments == [SpeechFragment("Your ", "AAA="), SpeechFragment("booking is set.", "")]
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["modalities"] == ["text", "audio"]
        assert kwargs["audio"] == {"voice": "alloy", "format": "pcm16"}
        assert kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_say_wraps_text(self):
        client = _make_openai_client([_chunk({"transcript": "Hello!", "data": ""})])
        speech = OpenAISpeech(client)

        await _collect(speech.stream_say("Hello!"))

        messages = client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[-1]["content"] == "Please say the following naturally: Hello!"

    @pytest.mark.asyncio
    async def test_transcribe(self):
        client = MagicMock()
        client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text=" book a slot "))
        speech = OpenAISpeech(client)

        assert await speech.transcribe(b"RIFF", "call.wav") == "book a slot"
        assert client.audio.transcriptions.create.call_args.kwargs["file"] == ("call.wav", b"RIFF")

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        client = MagicMock()
        client.chat.completions.create = AsyncMock(side_effect=TimeoutError("slow"))
        with pytest.raises(TimeoutError):
            await _collect(OpenAISpeech(client).stream_say("hi"))


class TestTranscriptOnlySpeech:
    @pytest.mark.asyncio
    async def test_streams_text_chunks(self):
        async def _astream(messages):
            for piece in ("You're ", "", "all set."):
                yield AIMessageChunk(content=piece)

        llm = MagicMock()
        llm.astream = _astream
        fragments = await _collect(TranscriptOnlySpeech(llm).stream_reply([HumanMessage(content="hi")]))
        assert "".join(f.transcript for f in fragments) == "You're all set."
        assert all(f.audio == "" for f in fragments)

    @pytest.mark.asyncio
    async def test_say_echoes_text(self):
        fragments = await _collect(TranscriptOnlySpeech(MagicMock()).stream_say("Goodbye!"))
        assert fragments == [SpeechFragment("Goodbye!", "")]

    @pytest.mark.asyncio
    async def test_transcribe_needs_openai(self):
        with pytest.raises(RuntimeError):
            await TranscriptOnlySpeech(MagicMock()).transcribe(b"...")
