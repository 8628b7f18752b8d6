"""FastAPI web server for branchchat."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel

from . import __version__
from .backends import get_store
from .config import get_default_model, get_default_provider, get_max_sessions
from .controller import ActiveBranchController, TurnResult
from .core import HISTORY_TYPES, Chat, content_from_wire, content_to_wire, new_id, utcnow
from .errors import (
    BranchChatError,
    BranchCycleDetected,
    BranchSwitchFailed,
    ForkCreationFailed,
    InvalidForkPoint,
    MessageNotInBranch,
    NoPrecedingUserMessage,
    OperationInProgress,
    UnknownBranch,
    UnknownChat,
)
from .export import branch_to_dict, branch_to_json, branch_to_markdown, message_to_dict
from .search import SearchProvider
from .store import ConversationStore
from .transport import ModelSelector, ModelTransport, OpenAICompatibleTransport

logger = logging.getLogger(__name__)

app = FastAPI(title="branchchat", version=__version__)

# Collaborators and open sessions (populated on first request)
_store: ConversationStore | None = None
_transport: ModelTransport | None = None
_search: SearchProvider | None = None
_controllers: dict[str, ActiveBranchController] = {}


def _get_store() -> ConversationStore:
    """Lazily initialize and cache the conversation store."""
    global _store
    if _store is None:
        _store = get_store()
    return _store


def _get_transport() -> ModelTransport:
    global _transport
    if _transport is None:
        _transport = OpenAICompatibleTransport()
        logger.info("Model transport: %s", _transport.base_url)
    return _transport


async def _get_controller(chat_id: str) -> ActiveBranchController:
    """Return the open session for a chat, opening it on first use."""
    controller = _controllers.get(chat_id)
    if controller is None:
        controller = ActiveBranchController(_get_store(), chat_id, _get_transport(), search=_search)
        try:
            await controller.open()
        except BranchChatError as e:
            _raise_http(e)
        # A concurrent request may have opened the same chat meanwhile
        controller = _controllers.setdefault(chat_id, controller)
        _evict_idle_sessions(keep=chat_id)
    return controller


def _evict_idle_sessions(keep: str) -> None:
    """Drop the oldest idle sessions once the cache exceeds its limit."""
    limit = get_max_sessions()
    for chat_id in list(_controllers):
        if len(_controllers) <= limit:
            break
        controller = _controllers[chat_id]
        if chat_id == keep or controller.state.in_flight:
            continue
        del _controllers[chat_id]
        logger.debug("Evicted idle session for chat %s", chat_id)


def _raise_http(e: BranchChatError):
    """Translate a branchchat error into an HTTPException."""
    if isinstance(e, (UnknownChat, UnknownBranch)):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, OperationInProgress):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (MessageNotInBranch, InvalidForkPoint, NoPrecedingUserMessage, BranchCycleDetected)):
        raise HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (ForkCreationFailed, BranchSwitchFailed)):
        logger.error("Branch operation failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))
    logger.error("Unhandled branchchat error: %s", e)
    raise HTTPException(status_code=500, detail=str(e))


def _chat_to_dict(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "title": chat.title,
        "system_prompt": chat.system_prompt,
        "history_type": chat.history_type,
        "history_count": chat.history_count,
        "default_provider": chat.default_provider,
        "default_model": chat.default_model,
        "created_at": chat.created_at.isoformat() if chat.created_at else None,
    }


def _selector_to_dict(selector: ModelSelector) -> dict:
    return {"provider_id": selector.provider_id, "model": selector.model}


def _turn_to_dict(result: TurnResult) -> dict:
    return {
        "branch_id": result.branch_id,
        "user_message": message_to_dict(result.user_message),
        "reply": message_to_dict(result.reply) if result.reply else None,
        "stopped": result.stopped,
    }


# ── Request bodies ───────────────────────────────────────────────


class ChatCreate(BaseModel):
    title: str = ""
    system_prompt: Optional[str] = None
    history_type: str = "count"
    history_count: int = 5
    default_provider: Optional[str] = None
    default_model: Optional[str] = None


class PolicyUpdate(BaseModel):
    history_type: Optional[str] = None
    history_count: Optional[int] = None
    system_prompt: Optional[str] = None


class SwitchRequest(BaseModel):
    branch_id: str


class SubmitRequest(BaseModel):
    content: Any
    search: bool = False


class EditRequest(BaseModel):
    index: int
    content: Any


class RetryRequest(BaseModel):
    index: int


class ModelRequest(BaseModel):
    provider_id: str
    model: str


# ── Routes ───────────────────────────────────────────────────────


@app.post("/api/chats")
async def create_chat(body: ChatCreate):
    """Create an empty chat."""
    if body.history_type not in HISTORY_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown history type: {body.history_type}")
    chat = Chat(
        id=new_id(),
        title=body.title,
        system_prompt=body.system_prompt or None,
        history_type=body.history_type,
        history_count=body.history_count,
        default_provider=body.default_provider or get_default_provider(),
        default_model=body.default_model or get_default_model(),
        created_at=utcnow(),
    )
    await _get_store().create_chat(chat)
    return _chat_to_dict(chat)


@app.get("/api/chats/{chat_id}")
async def get_chat(chat_id: str):
    """Return chat settings plus the active branch and its messages."""
    controller = await _get_controller(chat_id)
    state = controller.state
    return {
        "chat": _chat_to_dict(state.chat),
        "active_branch_id": state.active_branch_id,
        "messages": [message_to_dict(m) for m in state.messages],
        "model": _selector_to_dict(controller.selector),
        "in_flight": state.in_flight,
        "search_status": state.search_status,
    }


@app.patch("/api/chats/{chat_id}/policy")
async def update_policy(chat_id: str, body: PolicyUpdate):
    controller = await _get_controller(chat_id)
    try:
        chat = await controller.update_policy(body.history_type, body.history_count, body.system_prompt)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _chat_to_dict(chat)


@app.get("/api/chats/{chat_id}/branches")
async def get_branches(chat_id: str):
    controller = await _get_controller(chat_id)
    branches = await controller.refresh_branches()
    return {
        "active_branch_id": controller.state.active_branch_id,
        "branches": [branch_to_dict(b) for b in branches],
    }


@app.get("/api/branches/{branch_id}/messages")
async def get_branch_messages(branch_id: str):
    store = _get_store()
    if await store.get_branch(branch_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown branch: {branch_id}")
    messages = await store.list_messages(branch_id)
    return {"branch_id": branch_id, "messages": [message_to_dict(m) for m in messages]}


@app.post("/api/chats/{chat_id}/switch")
async def switch_branch(chat_id: str, body: SwitchRequest):
    controller = await _get_controller(chat_id)
    try:
        await controller.switch_branch(body.branch_id)
    except BranchChatError as e:
        _raise_http(e)
    return {
        "active_branch_id": controller.state.active_branch_id,
        "messages": [message_to_dict(m) for m in controller.state.messages],
    }


@app.post("/api/chats/{chat_id}/submit")
async def submit(chat_id: str, body: SubmitRequest):
    controller = await _get_controller(chat_id)
    try:
        result = await controller.submit_user_turn(content_from_wire(body.content), search=body.search)
    except BranchChatError as e:
        _raise_http(e)
    return _turn_to_dict(result)


@app.post("/api/chats/{chat_id}/edit")
async def edit(chat_id: str, body: EditRequest):
    controller = await _get_controller(chat_id)
    try:
        result = await controller.edit_turn(body.index, content_from_wire(body.content))
    except (IndexError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BranchChatError as e:
        _raise_http(e)
    return _turn_to_dict(result)


@app.post("/api/chats/{chat_id}/retry")
async def retry(chat_id: str, body: RetryRequest):
    controller = await _get_controller(chat_id)
    try:
        result = await controller.retry_turn(body.index)
    except IndexError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except BranchChatError as e:
        _raise_http(e)
    return _turn_to_dict(result)


@app.post("/api/chats/{chat_id}/break")
async def add_break(chat_id: str):
    controller = await _get_controller(chat_id)
    try:
        marker = await controller.add_break()
    except BranchChatError as e:
        _raise_http(e)
    return {"message": message_to_dict(marker) if marker else None}


@app.post("/api/chats/{chat_id}/stop")
async def stop(chat_id: str):
    """Cancel the model call in flight; the pending turn returns what it has so far."""
    controller = await _get_controller(chat_id)
    return {"stopped": controller.stop()}


@app.put("/api/chats/{chat_id}/model")
async def set_model(chat_id: str, body: ModelRequest):
    """Choose the provider and model used for the next turns of this session."""
    if not body.provider_id or not body.model:
        raise HTTPException(status_code=422, detail="provider_id and model are required")
    controller = await _get_controller(chat_id)
    controller.set_model(ModelSelector(provider_id=body.provider_id, model=body.model))
    return _selector_to_dict(controller.selector)


@app.get("/api/chats/{chat_id}/versions/{message_index}")
async def get_versions(chat_id: str, message_index: int):
    """Return the version group of a message and the active branch's position in it."""
    controller = await _get_controller(chat_id)
    try:
        group, indicator = controller.versions_for(message_index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "branches": [branch_to_dict(b) for b in group],
        "indicator": {
            "index": indicator.index,
            "total": indicator.total,
            "label": indicator.label,
            "previous_branch_id": indicator.previous_branch_id,
            "next_branch_id": indicator.next_branch_id,
        } if indicator else None,
    }


@app.get("/api/chats/{chat_id}/context")
async def get_context(
    chat_id: str,
    pending: str | None = Query(None, description="Unsent user text to append"),
):
    """Preview the context window the next turn would send."""
    controller = await _get_controller(chat_id)
    window = controller.context_preview(pending)
    return {"messages": [{"role": m.role, "content": content_to_wire(m.content)} for m in window]}


@app.get("/api/export/{branch_id}")
async def export_branch(
    branch_id: str,
    format: str = Query("md", description="Export format: md or json"),
):
    """Export a branch as Markdown or JSON."""
    store = _get_store()
    branch = await store.get_branch(branch_id)
    if branch is None:
        raise HTTPException(status_code=404, detail="Branch not found")
    chat = await store.get_chat(branch.chat_id)
    if chat is None:
        raise HTTPException(status_code=404, detail="Chat not found")
    messages = await store.list_messages(branch_id)

    safe_title = "".join(c if c.isalnum() or c in "-_ " else "" for c in (chat.title or branch.id))[:50]

    if format == "json":
        content = branch_to_json(chat, branch, messages)
        return Response(
            content=content,
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.json"'},
        )
    else:
        content = branch_to_markdown(chat, branch, messages)
        return Response(
            content=content,
            media_type="text/markdown",
            headers={"Content-Disposition": f'attachment; filename="{safe_title}.md"'},
        )
