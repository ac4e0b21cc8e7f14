"""Process-wide cache of live conversation contexts.

Design decisions
────────────────
• **OrderedDict** for O(1) LRU eviction and promotion.
• **Size tracking** via the ``json.dumps`` byte length of each context's
  message history, re-measured whenever a context is written back.
• **threading.Lock** so store work offloaded to worker threads and the
  event loop can touch the cache concurrently.
• Populate-on-miss (``get_or_create``) when a turn arrives for a session
  the process has not seen, evict-on-end (``evict``) when the session is
  finalized.
• Purely ephemeral: contexts are lost on process restart; bookings are
  not, because they live in the store.

Usage
─────
>>> cache = SessionCache(max_bytes=20 * 1024 * 1024)
>>> ctx = cache.get_or_create(42)
>>> ctx.add_message("user", "hi")
>>> cache.put(ctx)            # re-measure after the turn
>>> cache.evict(42)
"""

from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict

from voice_scheduler.context import ConversationContext

logger = logging.getLogger(__name__)

# Default ceiling: 20 MB
DEFAULT_MAX_BYTES = 20 * 1024 * 1024


class SessionCache:
    """LRU map of session id → ConversationContext, bounded by history size."""

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._max_bytes = max_bytes
        self._current_bytes = 0
        # session_id → (context, estimated_size_bytes)
        self._store: OrderedDict[int, tuple[ConversationContext, int]] = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _estimate_bytes(context: ConversationContext) -> int:
        """Lower-bound size of the context: its serialized message history."""
        return len(json.dumps(context.messages, default=str).encode("utf-8"))

    # ── Core operations ──────────────────────────────────────────────

    def get(self, session_id: int) -> ConversationContext | None:
        """Return the context (promoting it to MRU) or ``None``."""
        with self._lock:
            if session_id not in self._store:
                return None
            self._store.move_to_end(session_id)
            context, _ = self._store[session_id]
            return context

    def get_or_create(self, session_id: int) -> ConversationContext:
        """Return the cached context, creating an empty one on a miss."""
        context = self.get(session_id)
        if context is not None:
            return context
        logger.debug("SessionCache: miss for session %s, creating context", session_id)
        context = ConversationContext(session_id=session_id)
        self.put(context)
        return context

    def put(self, context: ConversationContext) -> None:
        """Insert or re-measure *context*.  Evicts LRU sessions if needed.

        The entry being written is never evicted to make room for itself,
        so a single oversized conversation stays usable.
        """
        size = self._estimate_bytes(context)

        with self._lock:
            if context.session_id in self._store:
                _, old_size = self._store.pop(context.session_id)
                self._current_bytes -= old_size

            while self._current_bytes + size > self._max_bytes and self._store:
                evicted_id, (_, evicted_size) = self._store.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.warning(
                    "SessionCache: evicted session %s (%d bytes) to stay under %d",
                    evicted_id, evicted_size, self._max_bytes,
                )

            self._store[context.session_id] = (context, size)
            self._current_bytes += size

    def evict(self, session_id: int) -> bool:
        """Drop a session's context.  Returns ``True`` if it was cached."""
        with self._lock:
            if session_id in self._store:
                _, size = self._store.pop(session_id)
                self._current_bytes -= size
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        """Total estimated bytes currently stored."""
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._store)

    def has(self, session_id: int) -> bool:
        """Check if a session is cached *without* promoting it."""
        return session_id in self._store
