"""Remote completion adapter: one stateful Gemini exchange per session.

The chat model is a LangChain chat model (``ChatGoogleGenerativeAI`` by
default). Anything exposing ``astream(messages)`` that yields chunks with a
``content`` attribute works, which is how tests plug in fakes.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import date
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from .errors import DeliveryError
from .models import ASSISTANT, USER, Attachment, Message

logger = logging.getLogger(__name__)


PERSONA = """You are 'Clara', a professional, warm, and efficient medical receptionist for 'City Health Specialists'.

Your responsibilities:
1. APPOINTMENTS: Help patients book, reschedule, or cancel appointments.
   - General availability: M-F 9am-5pm for Dr. Smith (Cardiology) and Dr. Jones (Dermatology).
   - Collect: Patient Name, Reason, Preferred Date/Time.

2. PRESCRIPTION & MEDICATION ANALYSIS:
   - You can analyze text descriptions of medications or uploaded images of prescriptions/medicine bottles.
   - For any medication identified, provide:
     * Brand & Generic Name
     * Common Uses (Indications)
     * Dosage Forms available (Tablets, Syrups, Injections, etc.)
     * Pharmaceutical Effects (Mechanism of action in simple terms)
     * Common Side Effects
     * Key Warnings (e.g., "Take with food", "Drowsiness").

3. CLINIC INFO: Answer questions about hours/location.

Current Date: {current_date}.
User Name: {user_name}.

Tone: Professional, empathetic, organized, and clinically accurate but accessible.
Format: Use Markdown. Use bolding for drug names and key headers. Use lists for side effects.

Constraints:
- Do NOT provide medical diagnoses.
- If a symptom sounds emergent (chest pain, trouble breathing), tell them to call 911 immediately.
- If an image is unclear, ask for a clearer photo.
"""

IMAGE_ONLY_PROMPT = "Analyze this image."


@dataclass
class ModelSettings:
    model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    top_p: float = 0.95
    api_key_env: str = "GOOGLE_API_KEY"


def build_system_prompt(user_name: Optional[str], today: Optional[date] = None) -> str:
    today = today or date.today()
    current_date = today.strftime("%A, %B %d, %Y").replace(" 0", " ")
    return PERSONA.format(current_date=current_date, user_name=user_name or "Guest").strip()


def _chunk_text(chunk: Any) -> str:
    """Extract plain text from a streamed chunk (str or list-of-parts content)."""
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return ""


def human_turn(text: str, attachment: Optional[Attachment] = None) -> HumanMessage:
    if attachment is None:
        return HumanMessage(content=text)
    return HumanMessage(
        content=[
            {"type": "text", "text": text or IMAGE_ONLY_PROMPT},
            {"type": "image_url", "image_url": attachment.data_uri()},
        ]
    )


def history_from_messages(messages: Iterable[Message]) -> List[BaseMessage]:
    """Rebuild model turns from a restored timeline (text only, finished turns).

    Leading assistant messages (the greeting) are dropped: the backend wants
    the history to open with a user turn.
    """
    out: List[BaseMessage] = []
    for m in messages:
        if m.error or m.streaming or not m.content.strip():
            continue
        if m.role == USER:
            out.append(HumanMessage(content=m.content))
        elif m.role == ASSISTANT and out:
            out.append(AIMessage(content=m.content))
    return out


class Exchange:
    """A long-lived conversation handle.

    Completed turns are remembered, so the engine must keep routing every
    turn of a session through the same instance.
    """

    def __init__(
        self,
        model_factory: Callable[[], Any],
        system_prompt: str,
        history: Optional[List[BaseMessage]] = None,
    ) -> None:
        self._model_factory = model_factory
        self.system_prompt = system_prompt
        self._history: List[BaseMessage] = list(history or [])

    @property
    def history(self) -> List[BaseMessage]:
        return list(self._history)

    async def stream(self, text: str, attachment: Optional[Attachment] = None) -> AsyncIterator[str]:
        """Send one user turn and yield text increments as they arrive.

        Raises :class:`DeliveryError` if the request is rejected or the
        stream breaks. A failed turn is not added to the history.
        """
        turn = human_turn(text, attachment)
        messages: List[BaseMessage] = [SystemMessage(content=self.system_prompt), *self._history, turn]
        pieces: List[str] = []
        try:
            model = self._model_factory()
            async for chunk in model.astream(messages):
                delta = _chunk_text(chunk)
                if not delta:
                    continue
                pieces.append(delta)
                yield delta
        except Exception as e:
            logger.exception("Completion stream failed: %s", e)
            raise DeliveryError(str(e) or e.__class__.__name__) from e

        self._history.extend([turn, AIMessage(content="".join(pieces))])


class CompletionResolver:
    """Opens :class:`Exchange` handles against a configured chat model."""

    def __init__(self, chat_model: Any = None, settings: Optional[ModelSettings] = None) -> None:
        self.settings = settings or ModelSettings()
        self._model = chat_model

    @property
    def chat_model(self) -> Any:
        # Built lazily so the service can start without credentials.
        if self._model is None:
            self._model = create_chat_model(self.settings)
        return self._model

    def open_exchange(self, user_name: Optional[str] = None, prior_turns: Iterable[Message] = ()) -> Exchange:
        history = history_from_messages(prior_turns)
        logger.info("Opening exchange for %s (%d prior turns)", user_name or "Guest", len(history))
        return Exchange(lambda: self.chat_model, build_system_prompt(user_name), history)


def create_chat_model(settings: ModelSettings) -> Any:
    """Build the Gemini chat model from settings."""
    from langchain_google_genai import ChatGoogleGenerativeAI

    api_key = os.environ.get(settings.api_key_env)
    if not api_key:
        raise RuntimeError(
            f"{settings.api_key_env} not set. Please configure it in the environment."
        )
    return ChatGoogleGenerativeAI(
        model=settings.model,
        google_api_key=api_key,
        temperature=settings.temperature,
        top_p=settings.top_p,
    )


def settings_from_config(cfg: Dict[str, Any]) -> ModelSettings:
    m = cfg.get("model", {}) if isinstance(cfg, dict) else {}
    defaults = ModelSettings()
    return ModelSettings(
        model=str(m.get("name", defaults.model)),
        temperature=float(m.get("temperature", defaults.temperature)),
        top_p=float(m.get("top_p", defaults.top_p)),
        api_key_env=str(m.get("api_key_env", defaults.api_key_env)),
    )
