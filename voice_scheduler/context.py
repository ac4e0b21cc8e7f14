"""Per-session conversation state held in memory while a call is live."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Role = Literal["user", "assistant"]


@dataclass
class ConversationContext:
    """What the agent knows about one live session.

    ``messages`` is the running history sent to the chat model on every
    turn.  The identity fields are filled in by ``identify_user`` and read
    by every tool that requires an identified caller.  Nothing here is
    durable: a process restart loses it, but not the bookings.
    """

    session_id: int
    user_id: int | None = None
    phone_number: str | None = None
    user_name: str | None = None
    messages: list[dict[str, str]] = field(default_factory=list)

    @property
    def is_identified(self) -> bool:
        return self.user_id is not None

    def add_message(self, role: Role, content: str) -> None:
        self.messages.append({"role": role, "content": content})

    def render_transcript(self) -> str:
        """Plain-text transcript of the history, one line per message."""
        speakers = {"user": "User", "assistant": "Assistant"}
        return "\n".join(
            f"{speakers.get(m['role'], m['role'].title())}: {m['content']}"
            for m in self.messages
        )
