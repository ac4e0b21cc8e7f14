"""LangGraph-based conversation loop for the voice scheduling agent.

Architecture:
  Every caller utterance runs one pass through a small StateGraph:

    1. **chatbot** — the tool-bound chat model reads the system prompt, the
                     session history and the new utterance, and either
                     answers directly or asks for tools
    2. **tools**   — executes the requested tool calls in order, logging
                     each one before it runs
    3. **speak**   — streams the spoken reply: over the tool results when
                     tools ran, or a read-out of the direct answer otherwise

  Routing:
    chatbot → (has tool calls?) → tools → speak → END
            → (no tool calls?)  → speak → END

  There is no tools → chatbot loop: one chat-model round trip per turn,
  and the speech model phrases the tool results itself.

  Events:
    Nodes push ``TurnEvent``s through LangGraph's custom stream writer, so
    a caller of ``VoiceAgent.process_utterance`` sees tool activity and
    reply fragments as they happen.  A turn ends with exactly one ``done``
    or exactly one ``error`` event.

  Memory:
    The graph has no checkpointer.  Session history lives in the
    ``ConversationContext`` held by the SessionCache; only text turns are
    kept, tool traffic stays inside the turn that produced it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Annotated, Any, Literal, NamedTuple

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from langgraph.types import StreamWriter
from pydantic import BaseModel
from typing_extensions import TypedDict

from voice_scheduler.config import (
    ANTHROPIC_API_KEY,
    BOOKING_STATUS,
    LLM_TIMEOUT_SECONDS,
    MODEL_NAME,
    SESSION_CACHE_MAX_BYTES,
)
from voice_scheduler.context import ConversationContext
from voice_scheduler.prompts import build_call_context_prompt, build_call_greeting, get_system_prompt
from voice_scheduler.services.cache import SessionCache
from voice_scheduler.services.metrics import metrics
from voice_scheduler.services.store import BookingStore
from voice_scheduler.speech import SpeechSynthesizer, build_speech, message_text
from voice_scheduler.summarizer import CallSummary, summarize_call
from voice_scheduler.tools.executor import (
    PHONE_DIGITS,
    ToolExecutor,
    ToolResult,
    normalize_phone,
)
from voice_scheduler.tools.schemas import tool_schemas

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong, please try again."
EMPTY_AUDIO_ERROR = "I couldn't hear anything in that recording. Could you please try again?"


# ── Events ───────────────────────────────────────────────────────────

EventType = Literal[
    "user_transcript",
    "tool_call_start",
    "tool_call_end",
    "transcript",
    "audio",
    "done",
    "error",
]


class TurnEvent(BaseModel):
    """One item of a turn's event stream.

    Only the fields relevant to ``type`` are set; serialize with
    ``model_dump(exclude_none=True)``.
    """

    type: EventType
    data: str | None = None
    id: str | None = None
    name: str | None = None
    parameters: dict[str, Any] | None = None
    result: str | None = None
    end_call: bool | None = None
    error: str | None = None


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """The state that flows through one turn.

    ``messages`` uses the ``add_messages`` reducer so the chatbot and tools
    nodes append to the history instead of replacing it.  ``reply`` is the
    full text the speak node produced and ``end_call`` is raised by the
    ``end_conversation`` tool.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    end_call: bool
    reply: str


# ── LLM builder ──────────────────────────────────────────────────────


def _build_llm():
    """Build the chat model with the seven scheduling tools bound."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=1024,
        timeout=LLM_TIMEOUT_SECONDS,
    )
    return llm.bind_tools(tool_schemas())


# ── Node: chatbot ────────────────────────────────────────────────────


def _make_chatbot_node(llm_with_tools):
    """Create the node that lets the chat model pick tools or answer."""

    async def chatbot_node(state: TurnState) -> dict:
        system = SystemMessage(content=get_system_prompt())
        with metrics.track("anthropic", "tool_select"):
            response = await llm_with_tools.ainvoke([system] + state["messages"])
        logger.debug("chatbot requested %d tool call(s)", len(getattr(response, "tool_calls", []) or []))
        return {"messages": [response]}

    return chatbot_node


# ── Node: tools ──────────────────────────────────────────────────────


def _make_tools_node(executor: ToolExecutor, store: BookingStore):
    """Create the node that runs the requested tool calls sequentially.

    Each call is logged before it runs, so the audit trail survives a tool
    that fails halfway.  Later calls in the same turn see the context as
    earlier calls left it.
    """

    async def tools_node(state: TurnState, config: RunnableConfig, writer: StreamWriter) -> dict:
        context: ConversationContext = config["configurable"]["context"]
        end_call = state.get("end_call", False)
        results: list[ToolMessage] = []

        for call in state["messages"][-1].tool_calls:
            call_id, name, args = call["id"], call["name"], call.get("args") or {}

            await asyncio.to_thread(
                store.append_tool_call_log, context.session_id, name, json.dumps(args),
            )
            writer(TurnEvent(type="tool_call_start", id=call_id, name=name, parameters=args))

            result = await asyncio.to_thread(executor.execute_named, name, args, context)
            end_call = end_call or result.end_call

            writer(TurnEvent(type="tool_call_end", id=call_id, name=name, result=result.text))
            results.append(ToolMessage(content=result.text, tool_call_id=call_id, name=name))
            logger.debug("tool %s → %s", name, result.outcome)

        return {"messages": results, "end_call": end_call}

    return tools_node


# ── Node: speak ──────────────────────────────────────────────────────


def _make_speak_node(speech: SpeechSynthesizer):
    """Create the node that streams the spoken reply."""

    async def speak_node(state: TurnState, writer: StreamWriter) -> dict:
        last = state["messages"][-1]
        after_tools = isinstance(last, ToolMessage)

        if after_tools:
            fragments = speech.stream_reply([SystemMessage(content=get_system_prompt())] + state["messages"])
        else:
            fragments = speech.stream_say(message_text(last))

        parts: list[str] = []
        async for fragment in fragments:
            if fragment.transcript:
                parts.append(fragment.transcript)
                writer(TurnEvent(type="transcript", data=fragment.transcript))
            if fragment.audio:
                writer(TurnEvent(type="audio", data=fragment.audio))

        reply = "".join(parts).strip()
        if not reply:
            # Nothing was spoken; fall back to the last message text.
            reply = message_text(last).strip()
        return {"reply": reply}

    return speak_node


# ── Conditional edges ────────────────────────────────────────────────


def should_use_tools(state: TurnState) -> str:
    """Route to tools when the model asked for any, otherwise straight to speak."""
    last_message = state["messages"][-1]
    if hasattr(last_message, "tool_calls") and last_message.tool_calls:
        return "tools"
    return "speak"


# ── Graph assembly ───────────────────────────────────────────────────


def create_turn_graph(
    llm_with_tools,
    executor: ToolExecutor,
    store: BookingStore,
    speech: SpeechSynthesizer,
):
    """Build and compile the single-turn graph.

    Run it with the session's context in the config and read the custom
    stream for events:

        graph.astream(
            {"messages": [...], "end_call": False, "reply": ""},
            config={"configurable": {"context": context}},
            stream_mode=["custom", "values"],
        )
    """
    graph = StateGraph(TurnState)

    graph.add_node("chatbot", _make_chatbot_node(llm_with_tools))
    graph.add_node("tools", _make_tools_node(executor, store))
    graph.add_node("speak", _make_speak_node(speech))

    graph.set_entry_point("chatbot")
    graph.add_conditional_edges(
        "chatbot", should_use_tools, {"tools": "tools", "speak": "speak"},
    )
    graph.add_edge("tools", "speak")
    graph.add_edge("speak", END)

    return graph.compile()


# ── Facade ───────────────────────────────────────────────────────────


class CallContext(NamedTuple):
    system_prompt: str
    greeting: str
    user_id: int | None


def _history_messages(context: ConversationContext) -> list[AnyMessage]:
    messages: list[AnyMessage] = []
    for message in context.messages:
        if message["role"] == "user":
            messages.append(HumanMessage(content=message["content"]))
        else:
            messages.append(AIMessage(content=message["content"]))
    return messages


class VoiceAgent:
    """Session lifecycle around the turn graph.

    Every collaborator can be injected; the defaults come from config.
    Store work runs in worker threads so the event loop stays free while
    the database is busy.
    """

    def __init__(
        self,
        store: BookingStore,
        *,
        cache: SessionCache | None = None,
        llm=None,
        speech: SpeechSynthesizer | None = None,
        executor: ToolExecutor | None = None,
        extraction_llm=None,
    ) -> None:
        self._store = store
        self._cache = cache if cache is not None else SessionCache(SESSION_CACHE_MAX_BYTES)
        self._llm = llm if llm is not None else _build_llm()
        self._speech = speech if speech is not None else build_speech(self._llm)
        self._executor = executor or ToolExecutor(store, booking_status=BOOKING_STATUS)
        self._extraction_llm = extraction_llm
        self._graph = create_turn_graph(self._llm, self._executor, store, self._speech)

    @property
    def cache(self) -> SessionCache:
        return self._cache

    # ── Sessions ─────────────────────────────────────────────────────

    async def start_session(self, phone_number: str | None = None) -> ConversationContext:
        """Open a call session, linking an existing user when the phone is known."""
        digits = normalize_phone(phone_number)
        if len(digits) != PHONE_DIGITS:
            digits = ""

        user = await asyncio.to_thread(self._store.find_user_by_phone, digits) if digits else None
        session = await asyncio.to_thread(
            self._store.create_call_session,
            user.id if user else None,
            digits or None,
        )

        context = ConversationContext(
            session_id=session.id,
            user_id=user.id if user else None,
            phone_number=digits or None,
            user_name=user.name if user else None,
        )
        self._cache.put(context)
        logger.info("Started session %s (known caller: %s)", session.id, user is not None)
        return context

    async def _load_context(self, session_id: int) -> ConversationContext:
        context = self._cache.get(session_id)
        if context is not None:
            return context

        session = await asyncio.to_thread(self._store.get_call_session, session_id)
        if session is None:
            raise LookupError(f"Call session {session_id} not found")
        user = await asyncio.to_thread(self._store.get_user, session.user_id) if session.user_id else None

        context = ConversationContext(
            session_id=session_id,
            user_id=session.user_id,
            phone_number=session.phone_number,
            user_name=user.name if user else None,
        )
        self._cache.put(context)
        logger.debug("Rebuilt context for session %s from the store", session_id)
        return context

    async def end_session(self, session_id: int, transcript: str | None = None) -> CallSummary:
        """Summarize and finalize the session, then drop its context."""
        context = self._cache.get(session_id)
        if transcript is None and context is not None and context.messages:
            transcript = context.render_transcript()
        try:
            return await asyncio.to_thread(
                summarize_call, self._store, session_id, transcript, llm=self._extraction_llm,
            )
        finally:
            self._cache.evict(session_id)

    # ── Turns ────────────────────────────────────────────────────────

    async def process_utterance(self, session_id: int, text: str) -> AsyncIterator[TurnEvent]:
        """Run one caller turn and stream its events."""
        yield TurnEvent(type="user_transcript", data=text)

        context: ConversationContext | None = None
        try:
            context = await self._load_context(session_id)
            state = {
                "messages": _history_messages(context) + [HumanMessage(content=text)],
                "end_call": False,
                "reply": "",
            }
            context.add_message("user", text)

            final: dict = {}
            async for mode, chunk in self._graph.astream(
                state,
                config={"configurable": {"context": context}},
                stream_mode=["custom", "values"],
            ):
                if mode == "custom":
                    yield chunk
                else:
                    final = chunk

            reply = final.get("reply", "")
            end_call = bool(final.get("end_call", False))
            if reply:
                context.add_message("assistant", reply)
        except Exception:
            logger.exception("Turn failed for session %s", session_id)
            yield TurnEvent(type="error", error=GENERIC_ERROR)
            return
        finally:
            if context is not None:
                self._cache.put(context)

        yield TurnEvent(type="done", end_call=end_call)

    async def process_audio(
        self,
        session_id: int,
        audio: bytes,
        filename: str = "audio.webm",
    ) -> AsyncIterator[TurnEvent]:
        """Transcribe an uploaded recording, then run it as a turn."""
        try:
            text = await self._speech.transcribe(audio, filename)
        except Exception:
            logger.exception("Transcription failed for session %s", session_id)
            yield TurnEvent(type="error", error=GENERIC_ERROR)
            return

        if not text.strip():
            yield TurnEvent(type="error", error=EMPTY_AUDIO_ERROR)
            return

        async for event in self.process_utterance(session_id, text):
            yield event

    # ── Direct tool execution ────────────────────────────────────────

    async def execute_tool(
        self,
        session_id: int,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> ToolResult:
        """Run one tool outside the chat model, e.g. from a call provider webhook."""
        context = await self._load_context(session_id)
        try:
            result = await asyncio.to_thread(self._executor.execute_named, name, arguments, context)
        finally:
            self._cache.put(context)
        await asyncio.to_thread(
            self._store.append_tool_call_log,
            session_id,
            name,
            json.dumps(arguments or {}),
            json.dumps({"result": result.text, "end_call": result.end_call}),
        )
        return result

    # ── Call-context prompt ──────────────────────────────────────────

    async def prepare_call_context(self, phone_number: str | None) -> CallContext:
        """System prompt and greeting for providers that cannot call tools."""
        digits = normalize_phone(phone_number)
        user = None
        if len(digits) == PHONE_DIGITS:
            user = await asyncio.to_thread(self._store.find_user_by_phone, digits)

        if user is None:
            return CallContext(build_call_context_prompt(None, []), build_call_greeting(None), None)

        appointments = await asyncio.to_thread(self._store.list_appointments_by_user, user.id)
        return CallContext(
            build_call_context_prompt(user.name, appointments, digits),
            build_call_greeting(user.name, digits),
            user.id,
        )
