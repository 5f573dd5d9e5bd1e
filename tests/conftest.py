"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence

import pytest
import yaml
from langchain_core.messages import AIMessageChunk

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from clinic_chat.completion import CompletionResolver  # noqa: E402
from clinic_chat.engine import FREEFORM, SCRIPT, ConversationEngine  # noqa: E402
from clinic_chat.script import DialogueScript, ScriptResolver  # noqa: E402
from clinic_chat.store import Autosaver, SessionStore  # noqa: E402


class FakeChatModel:
    """Stands in for the Gemini chat model.

    Yields ``chunks`` in order. ``fail_after=n`` raises after n chunks,
    ``gate`` (an asyncio.Event) holds the stream open until it is set.
    """

    def __init__(
        self,
        chunks: Sequence[str] = ("ok",),
        *,
        fail_after: Optional[int] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.gate = gate
        self.calls: List[List[Any]] = []

    async def astream(self, messages):
        self.calls.append(list(messages))
        if self.gate is not None:
            await self.gate.wait()
        for i, chunk in enumerate(self.chunks):
            if self.fail_after is not None and i >= self.fail_after:
                raise ConnectionError("stream broken")
            yield AIMessageChunk(content=chunk)
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise ConnectionError("stream broken")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for sessions / users during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var.startswith("CLINIC_CHAT"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    yield


@pytest.fixture
def fake_model():
    """The FakeChatModel class, so tests can build one per scenario."""
    return FakeChatModel


@pytest.fixture
def store(tmp_data_dir: Path) -> SessionStore:
    return SessionStore(str(tmp_data_dir))


@pytest.fixture(scope="session")
def script() -> DialogueScript:
    return DialogueScript.load_default()


@pytest.fixture
def resolver(script: DialogueScript) -> ScriptResolver:
    return ScriptResolver(script)


@pytest.fixture
def script_engine(store: SessionStore, resolver: ScriptResolver):
    """Factory for script-mode engines with no thinking delay."""
    def make(owner_id: str = "alice", *, autosave_delay: float = 0.01) -> ConversationEngine:
        return ConversationEngine(
            owner_id,
            store=store,
            mode=SCRIPT,
            owner_name="Alice",
            script=resolver,
            autosaver=Autosaver(autosave_delay),
            thinking_delay=0,
        )
    return make


@pytest.fixture
def freeform_engine(store: SessionStore):
    """Factory for free-form engines around a given chat model."""
    def make(model: Any, owner_id: str = "alice", *, autosave_delay: float = 0.01) -> ConversationEngine:
        return ConversationEngine(
            owner_id,
            store=store,
            mode=FREEFORM,
            owner_name="Alice",
            completion=CompletionResolver(model),
            autosaver=Autosaver(autosave_delay),
        )
    return make


@pytest.fixture
def write_config(tmp_path: Path, tmp_data_dir: Path):
    """Write a YAML config into tmp_path and return its path."""
    def write(**sections: Any) -> str:
        cfg = {
            "engine": {"mode": "script", "autosave_delay": 0.01, "thinking_delay": 0},
            "storage": {"data_dir": str(tmp_data_dir)},
            "logging": {"level": "WARNING"},
        }
        for key, value in sections.items():
            cfg.setdefault(key, {}).update(value)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
        return str(path)
    return write
