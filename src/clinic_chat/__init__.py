"""City Health conversation service.

A conversation engine that either walks the user through a fixed
receptionist script or streams replies from a Gemini chat model, keeping
one persisted chat session per user.

Typical usage
-------------
from clinic_chat import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .engine import ConversationEngine
from .models import Attachment, Choice, Message, Session
from .script import DialogueScript, ScriptResolver
from .server import create_app
from .store import Autosaver, SessionStore

__all__ = [
    "Attachment",
    "Autosaver",
    "Choice",
    "ConversationEngine",
    "DialogueScript",
    "Message",
    "ScriptResolver",
    "Session",
    "SessionStore",
    "create_app",
    "__version__",
    "get_version",
]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "1.0.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
