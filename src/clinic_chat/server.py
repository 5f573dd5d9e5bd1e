"""FastAPI application exposing the conversation engine to a web front-end."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from . import errors
from .completion import CompletionResolver
from .completion import settings_from_config as model_settings_from_config
from .config import configure_logging, load_config
from .engine import SCRIPT, ConversationEngine, EngineSettings, settings_from_config
from .errors import AuthError, BusyError, ChatError, ValidationError
from .identity import User, UserDirectory
from .models import Attachment, Choice
from .script import DialogueScript, ScriptResolver
from .store import Autosaver, SessionStore

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request models
# -----------------------------
class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class LogoutRequest(BaseModel):
    owner_id: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class AttachmentIn(BaseModel):
    encoded_bytes: str = Field(..., min_length=1, description="Raw base64 image data, no data: prefix.")
    mime_type: str = Field(..., min_length=1)
    display_ref: str = ""


class SubmitRequest(BaseModel):
    text: str = ""
    attachment: Optional[AttachmentIn] = None
    stream: bool = Field(default=False, description="Stream message updates as NDJSON.")


class ChoiceRequest(BaseModel):
    label: str
    target_node_id: str
    stream: bool = False


# -----------------------------
# Utilities
# -----------------------------
_AUTH_STATUS = {
    errors.EMAIL_IN_USE: 409,
    errors.INVALID_EMAIL: 400,
    errors.USER_NOT_FOUND: 401,
    errors.WRONG_PASSWORD: 401,
    errors.AUTH_FAILED: 400,
}


def _auth_http_error(e: AuthError) -> HTTPException:
    return HTTPException(status_code=_AUTH_STATUS.get(e.code, 400), detail={"code": e.code, "message": str(e)})


def _make_script(cfg: Dict[str, Any]) -> ScriptResolver:
    path = (cfg.get("script") or {}).get("path")
    script = DialogueScript.from_yaml(path) if path else DialogueScript.load_default()
    return ScriptResolver(script)


class EngineRegistry:
    """Live engines keyed by owner id; one per logged-in user."""

    def __init__(
        self,
        store: SessionStore,
        settings: EngineSettings,
        *,
        script: Optional[ScriptResolver] = None,
        completion: Optional[CompletionResolver] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.script = script
        self.completion = completion
        self.autosaver = Autosaver(settings.autosave_delay)
        self._engines: Dict[str, ConversationEngine] = {}

    def open(self, user: User) -> ConversationEngine:
        self.close(user.id)
        engine = ConversationEngine(
            user.id,
            store=self.store,
            mode=self.settings.mode,
            owner_name=user.name,
            script=self.script,
            completion=self.completion,
            autosaver=self.autosaver,
            thinking_delay=self.settings.thinking_delay,
        )
        engine.initialize()
        self._engines[user.id] = engine
        return engine

    def find(self, owner_id: str) -> Optional[ConversationEngine]:
        return self._engines.get(owner_id)

    def get(self, owner_id: str) -> ConversationEngine:
        engine = self.find(owner_id)
        if engine is None:
            raise HTTPException(status_code=404, detail="No active session for this user.")
        return engine

    def close(self, owner_id: str) -> bool:
        engine = self._engines.pop(owner_id, None)
        if engine is None:
            return False
        if not engine.busy:
            engine.flush()
        engine.teardown()
        return True

    def close_all(self) -> None:
        for owner_id in list(self._engines):
            self.close(owner_id)


def _stream_turn(engine: ConversationEngine, turn) -> StreamingResponse:
    """Run ``turn`` in the background and relay every message update as NDJSON.

    The status line is already sent when the turn starts, so a turn that is
    rejected or fails ends the stream with ``{"error": {"type", "message"}}``.
    """
    queue: asyncio.Queue = asyncio.Queue()
    previous = engine.listener
    engine.listen(lambda m: queue.put_nowait(m.to_dict()))

    async def run() -> None:
        restore = None
        try:
            await turn
        except ChatError as e:
            # A rejected turn never started; hand updates back to the one in flight.
            restore = previous
            logger.info("Streamed turn for %s rejected: %s", engine.owner_id, e)
            queue.put_nowait({"error": {"type": type(e).__name__, "message": str(e)}})
        except Exception as e:
            logger.exception("Streamed turn for %s failed", engine.owner_id)
            queue.put_nowait({"error": {"type": "InternalError", "message": str(e) or type(e).__name__}})
        finally:
            engine.listen(restore)
            queue.put_nowait(None)

    task = asyncio.create_task(run())

    async def body() -> AsyncIterator[str]:
        while True:
            item = await queue.get()
            if item is None:
                break
            yield json.dumps(item, ensure_ascii=False) + "\n"
        await task

    return StreamingResponse(body(), media_type="application/x-ndjson")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    chat_model: Any = None,
    store: Optional[SessionStore] = None,
    users: Optional[UserDirectory] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    configure_logging(cfg)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    data_dir = str(cfg.get("storage", {}).get("data_dir", "data"))

    # Services
    settings = settings_from_config(cfg)
    store = store or SessionStore(data_dir)
    users = users or UserDirectory(data_dir)
    if settings.mode == SCRIPT:
        registry = EngineRegistry(store, settings, script=_make_script(cfg))
    else:
        completion = CompletionResolver(chat_model, model_settings_from_config(cfg))
        registry = EngineRegistry(store, settings, completion=completion)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Write out pending autosaves before the process goes away.
        registry.close_all()

    app = FastAPI(title="City Health Chat", version="1.0.0", lifespan=lifespan)
    app.state.registry = registry
    app.state.users = users
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True, "mode": settings.mode, "data_dir": data_dir}

    # ---------- identity ----------

    @app.post("/auth/register")
    async def register(req: RegisterRequest) -> Dict[str, Any]:
        try:
            user = users.register(req.email, req.password, req.name)
        except AuthError as e:
            raise _auth_http_error(e)
        engine = registry.open(user)
        return {"user": user.to_dict(), "session": engine.snapshot()}

    @app.post("/auth/login")
    async def login(req: LoginRequest) -> Dict[str, Any]:
        try:
            user = users.login(req.email, req.password)
        except AuthError as e:
            raise _auth_http_error(e)
        engine = registry.open(user)
        return {"user": user.to_dict(), "session": engine.snapshot()}

    @app.post("/auth/logout")
    async def logout(req: LogoutRequest) -> Dict[str, Any]:
        closed = registry.close(req.owner_id)
        current = users.current_user()
        if current is not None and current.id == req.owner_id:
            users.logout()
        return {"ok": True, "closed": closed}

    @app.patch("/users/{owner_id}")
    async def update_profile(owner_id: str, req: ProfileUpdate) -> Dict[str, Any]:
        try:
            user = users.update_profile(owner_id, name=req.name, email=req.email, password=req.password)
        except AuthError as e:
            raise _auth_http_error(e)
        engine = registry.find(owner_id)
        if engine is not None:
            engine.rename_owner(user.name)
        return {"user": user.to_dict()}

    # ---------- conversation ----------

    @app.get("/sessions/{owner_id}")
    async def get_session(owner_id: str) -> Dict[str, Any]:
        return registry.get(owner_id).snapshot()

    @app.post("/sessions/{owner_id}/messages")
    async def submit(owner_id: str, req: SubmitRequest):
        engine = registry.get(owner_id)
        attachment = Attachment(**req.attachment.model_dump()) if req.attachment else None
        try:
            engine.check_input(req.text, attachment)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except BusyError as e:
            raise HTTPException(status_code=409, detail=str(e))

        if req.stream:
            return _stream_turn(engine, engine.submit_input(req.text, attachment))
        produced = await engine.submit_input(req.text, attachment)
        return {"messages": [m.to_dict() for m in produced], "cursor": engine.current_node_id}

    @app.post("/sessions/{owner_id}/choices")
    async def select_choice(owner_id: str, req: ChoiceRequest):
        engine = registry.get(owner_id)
        choice = Choice(label=req.label, target_node_id=req.target_node_id)
        try:
            engine.check_input(choice.label, target_id=choice.target_node_id)
        except BusyError as e:
            raise HTTPException(status_code=409, detail=str(e))

        if req.stream:
            return _stream_turn(engine, engine.select_choice(choice))
        produced = await engine.select_choice(choice)
        return {"messages": [m.to_dict() for m in produced], "cursor": engine.current_node_id}

    @app.delete("/sessions/{owner_id}")
    async def clear(owner_id: str) -> Dict[str, Any]:
        engine = registry.get(owner_id)
        try:
            engine.clear_session()
        except BusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return engine.snapshot()

    return app
