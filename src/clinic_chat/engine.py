"""Conversation engine: the authoritative in-memory timeline of one session.

The engine runs on the asyncio event loop. All mutations for a session
happen on that single timeline; while a turn is in flight the engine is
busy and rejects further input instead of queueing it.

Usage::

    engine = ConversationEngine("user-1", store=store, mode=SCRIPT,
                                script=ScriptResolver(DialogueScript.load_default()))
    engine.initialize()
    await engine.submit_input("book appointment")
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .completion import CompletionResolver, Exchange
from .errors import BusyError, DeliveryError, ValidationError
from .models import ASSISTANT, USER, Attachment, Choice, Message
from .script import ScriptResolver, render_text
from .store import Autosaver, SessionStore

logger = logging.getLogger(__name__)

FREEFORM = "freeform"
SCRIPT = "script"
MODES = (FREEFORM, SCRIPT)

GREETING = (
    "Hello {name}, welcome back to City Health Specialists. I'm Clara. \n\n"
    "I can help you schedule appointments or provide detailed information about "
    "your prescriptions and medications. \n\n"
    "Feel free to upload a photo of your prescription!"
)
CLEARED_GREETING = "Chat history cleared. How can I help you today?"
APOLOGY = "I'm sorry, I encountered a system error processing your request. Please try again."

Listener = Callable[[Message], None]


@dataclass
class EngineSettings:
    mode: str = FREEFORM
    autosave_delay: float = 1.0   # seconds; trailing-edge debounce
    thinking_delay: float = 0.6   # seconds; pause before a scripted reply


def settings_from_config(cfg: Dict[str, Any]) -> EngineSettings:
    e = cfg.get("engine", {}) if isinstance(cfg, dict) else {}
    defaults = EngineSettings()
    mode = str(e.get("mode", defaults.mode)).lower()
    if mode not in MODES:
        raise ValueError(f"engine.mode must be one of {MODES}, got {mode!r}")
    return EngineSettings(
        mode=mode,
        autosave_delay=float(e.get("autosave_delay", defaults.autosave_delay)),
        thinking_delay=float(e.get("thinking_delay", defaults.thinking_delay)),
    )


class ConversationEngine:
    """Owns the live message list and dialogue cursor for one owner."""

    def __init__(
        self,
        owner_id: str,
        *,
        store: SessionStore,
        mode: str = FREEFORM,
        owner_name: Optional[str] = None,
        script: Optional[ScriptResolver] = None,
        completion: Optional[CompletionResolver] = None,
        autosaver: Optional[Autosaver] = None,
        thinking_delay: float = 0.6,
    ) -> None:
        if mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")
        if mode == SCRIPT and script is None:
            raise ValueError("script mode needs a ScriptResolver")
        if mode == FREEFORM and completion is None:
            raise ValueError("freeform mode needs a CompletionResolver")

        self.owner_id = owner_id
        self.owner_name = owner_name
        self.mode = mode
        self.store = store
        self.script = script
        self.completion = completion
        self.autosaver = autosaver or Autosaver()
        self.thinking_delay = max(0.0, float(thinking_delay))

        self._messages: List[Message] = []
        self._cursor: Optional[str] = script.root if script else None
        self._exchange: Optional[Exchange] = None
        self._listener: Optional[Listener] = None
        self._busy = False
        self._closed = False

    # ---------- read-only projection ----------

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_node_id(self) -> Optional[str]:
        return self._cursor

    @property
    def listener(self) -> Optional[Listener]:
        return self._listener

    def listen(self, listener: Optional[Listener]) -> None:
        """Register the single consumer of message updates (None detaches)."""
        self._listener = listener

    def snapshot(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "mode": self.mode,
            "busy": self._busy,
            "cursor": self._cursor,
            "messages": [m.to_dict() for m in self._messages],
        }

    # ---------- lifecycle ----------

    def initialize(self) -> None:
        """Adopt the stored history, or seed and persist a greeting."""
        session = self.store.load(self.owner_id)
        self._closed = False

        if session.messages:
            self._messages = list(session.messages)
            self._cursor = self._restore_cursor(session.cursor)
            logger.info("Restored %d messages for %s", len(self._messages), self.owner_id)
        else:
            self._cursor = self.script.root if self.script else None
            self._messages = [self._greeting(GREETING)]
            self._save_now()
            logger.info("Seeded new session for %s", self.owner_id)

        if self.mode == FREEFORM:
            self._exchange = self.completion.open_exchange(self.owner_name, self._messages)

    def teardown(self) -> None:
        """Detach from the owner: no further saves or notifications."""
        self.autosaver.cancel(self.owner_id)
        self._listener = None
        self._exchange = None
        self._closed = True

    def rename_owner(self, name: Optional[str]) -> None:
        """Change the display name used by greetings, node text and the persona prompt.

        A free-form exchange carries the name in its system prompt, so it is
        dropped here and reopened from the timeline on the next turn.
        """
        self.owner_name = name
        if self.mode == FREEFORM:
            self._exchange = None

    def flush(self) -> bool:
        """Write the current timeline to the store right away."""
        if self._closed:
            return False
        return self._save_now()

    # ---------- turns ----------

    async def submit_input(self, text: str, attachment: Optional[Attachment] = None) -> List[Message]:
        """Run one user turn. Returns the messages appended by this turn."""
        return await self._run_turn(text or "", attachment, target_id=None)

    async def select_choice(self, choice: Choice) -> List[Message]:
        """Like ``submit_input(choice.label)`` but follows the choice target directly."""
        return await self._run_turn(choice.label, None, target_id=choice.target_node_id)

    def clear_session(self) -> None:
        if self._busy:
            raise BusyError("Cannot clear while a reply is in progress")
        self.autosaver.cancel(self.owner_id)
        self.store.clear(self.owner_id)

        if self.mode == SCRIPT:
            self._cursor = self.script.root
            greeting = self.script.render(self.script.script.root_node, self._context())
        else:
            self._exchange = self.completion.open_exchange(self.owner_name)
            greeting = Message(role=ASSISTANT, content=CLEARED_GREETING)
        self._messages = [greeting]
        self._save_now()
        self._notify(greeting)
        logger.info("Cleared session for %s", self.owner_id)

    async def _run_turn(
        self,
        text: str,
        attachment: Optional[Attachment],
        *,
        target_id: Optional[str],
    ) -> List[Message]:
        self.check_input(text, attachment, target_id=target_id)

        self._busy = True
        try:
            user_msg = Message(role=USER, content=text, attachment=attachment)
            self._append(user_msg)
            if self.mode == SCRIPT:
                produced = await self._script_turn(text, target_id)
            else:
                produced = await self._freeform_turn(text, attachment)
        finally:
            self._busy = False
        return [user_msg, *produced]

    def check_input(
        self,
        text: str,
        attachment: Optional[Attachment] = None,
        *,
        target_id: Optional[str] = None,
    ) -> None:
        """Raise BusyError / ValidationError if a turn would be rejected."""
        if self._busy:
            raise BusyError("A reply is already in progress")
        if (text or "").strip() or target_id:
            return
        if self.mode == FREEFORM and attachment is not None:
            return
        raise ValidationError("Message cannot be empty.")

    async def _script_turn(self, text: str, target_id: Optional[str]) -> List[Message]:
        node = self.script.resolve(self._cursor, text, target_id=target_id)
        if self.thinking_delay:
            await asyncio.sleep(self.thinking_delay)
        self._cursor = node.id
        reply = self.script.render(node, self._context())
        self._append(reply)
        return [reply]

    async def _freeform_turn(self, text: str, attachment: Optional[Attachment]) -> List[Message]:
        if self._exchange is None:
            self._exchange = self.completion.open_exchange(self.owner_name, self._messages[:-1])
        exchange = self._exchange

        reply = Message(role=ASSISTANT, content="", streaming=True)
        self._append(reply)
        try:
            async for delta in exchange.stream(text, attachment):
                reply.content += delta
                self._changed(reply)
        except DeliveryError as e:
            logger.warning("Reply for %s failed: %s", self.owner_id, e)
            failure = Message(role=ASSISTANT, content=APOLOGY, error=True)
            self._append(failure)
            return [reply, failure]

        reply.streaming = False
        self._changed(reply)
        return [reply]

    # ---------- internals ----------

    def _context(self) -> Dict[str, Any]:
        return {"name": self.owner_name or "Guest"}

    def _greeting(self, template: str) -> Message:
        if self.mode == SCRIPT:
            return self.script.render(self.script.script.root_node, self._context())
        return Message(role=ASSISTANT, content=render_text(template, self._context()))

    def _restore_cursor(self, cursor: Optional[str]) -> Optional[str]:
        if self.script is None:
            return None
        if cursor and cursor in self.script.script:
            return cursor
        return self.script.root

    def _append(self, message: Message) -> None:
        if self._messages:
            last: datetime = self._messages[-1].timestamp
            if message.timestamp < last:
                message.timestamp = last
        self._messages.append(message)
        self._changed(message)

    def _changed(self, message: Message) -> None:
        self._notify(message)
        if not self._closed:
            self.autosaver.schedule(self.owner_id, self.flush)

    def _notify(self, message: Message) -> None:
        if self._listener is None:
            return
        try:
            self._listener(message)
        except Exception:
            logger.exception("Message listener failed for %s", self.owner_id)

    def _save_now(self) -> bool:
        cursor = self._cursor if self.mode == SCRIPT else None
        return self.store.save(self.owner_id, list(self._messages), cursor=cursor)
