"""Voice Scheduler: appointment booking through a conversational voice agent.

Architecture Overview
=====================

Callers identify themselves by phone number and then list, book, review,
reschedule and cancel appointments in natural language.  Each utterance is
one pass through a **LangGraph** turn graph:

1. **chatbot**: Claude, bound to seven scheduling tools, reads the history
   and either answers directly or requests tool calls.

2. **tools**: runs the requested calls in order against the booking store,
   logging each one first.

3. **speak**: streams the spoken reply (transcript plus PCM16 audio) from
   the speech model.

Routing: chatbot → (tool calls?) → tools → speak → END, else chatbot → speak → END

When the call ends, the transcript is reconciled by the call summarizer:
confirmed bookings and cancellations the tools did not already apply are
written, and the session is finalized with a summary.

Key Design Decisions
--------------------
- **No double booking**: tools re-read the booked slots right before every
  write, and a partial unique index over active (date, time) pairs backs
  that up in the database.
- **Typed tool calls**: arguments are validated into a pydantic tagged
  union before any tool runs; bad input becomes guidance for the model.
- **Idempotent summaries**: re-summarizing a call never books twice.
- **Ephemeral context**: conversation history lives in a process-wide LRU
  cache; everything durable lives in the store.

Package Structure
-----------------
- ``voice_scheduler/agent.py`` — turn graph and the ``VoiceAgent`` facade
- ``voice_scheduler/summarizer.py`` — post-call extraction and reconciliation
- ``voice_scheduler/speech.py`` — spoken replies and speech-to-text
- ``voice_scheduler/prompts.py`` — system prompt and per-call context prompt
- ``voice_scheduler/config.py`` — configuration from env / ``.env`` / SSM
- ``voice_scheduler/models.py`` — SQLAlchemy models
- ``voice_scheduler/context.py`` — in-memory conversation context
- ``voice_scheduler/main.py`` — CLI chat interface
- ``voice_scheduler/services/`` — booking store, slot catalog, session cache, metrics
- ``voice_scheduler/tools/`` — tool argument schemas and the tool executor
"""
