"""Core data models for branchchat."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Union

HISTORY_TYPES = ("all", "none", "count")


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ContentPart:
    """One typed segment of a multi-part message."""

    type: str  # "text" | "image"
    text: str = ""
    data: str = ""  # image URL or data URI


Content = Union[str, list[ContentPart]]


@dataclass(frozen=True)
class HistoryPolicy:
    """How much of a branch is replayed to the model."""

    history_type: str = "count"
    history_count: int = 5
    system_prompt: Optional[str] = None


@dataclass
class Chat:
    """One conversation container."""

    id: str
    title: str = ""
    system_prompt: Optional[str] = None
    history_type: str = "count"
    history_count: int = 5
    default_provider: str = ""
    default_model: str = ""
    created_at: Optional[datetime] = None

    @property
    def policy(self) -> HistoryPolicy:
        return HistoryPolicy(
            history_type=self.history_type,
            history_count=self.history_count,
            system_prompt=self.system_prompt,
        )


@dataclass(frozen=True)
class Branch:
    """One timeline within a chat.

    A branch with neither ``parent_branch_id`` nor ``forked_from_message_id``
    is a root. Otherwise it was produced by editing or regenerating the
    message ``forked_from_message_id`` of ``parent_branch_id``.
    """

    id: str
    chat_id: str
    created_at: datetime
    name: Optional[str] = None
    forked_from_message_id: Optional[str] = None
    parent_branch_id: Optional[str] = None

    @property
    def is_fork(self) -> bool:
        return self.parent_branch_id is not None and self.forked_from_message_id is not None

    @property
    def fork_key(self) -> tuple[Optional[str], Optional[str]]:
        return (self.parent_branch_id, self.forked_from_message_id)


@dataclass(frozen=True)
class Message:
    """A single turn within a branch."""

    id: str
    chat_id: str
    branch_id: str
    role: str  # "user" | "assistant" | "system"
    content: Content
    created_at: datetime
    type: str = "text"  # "text" | "image" | "error" | "break"
    reasoning: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    search_enabled: bool = False
    search_status: str = "none"
    search_result: Optional[dict] = None
    provider_id: str = ""
    model: str = ""
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    tool_calls: list = field(default_factory=list)


@dataclass(frozen=True)
class RequestMessage:
    """One entry of the context window sent to the model."""

    role: str  # "system" | "user" | "assistant"
    content: Content

    def to_dict(self) -> dict:
        return {"role": self.role, "content": content_to_wire(self.content)}


# ── Content helpers ──────────────────────────────────────────────


def plain_text(content: Content) -> str:
    """Return the concatenated text segments of a message body."""
    if isinstance(content, str):
        return content
    return "".join(part.text for part in content if part.type == "text")


def image_refs(content: Content) -> list[str]:
    if isinstance(content, str):
        return []
    return [part.data for part in content if part.type == "image"]


def content_to_wire(content: Content):
    """Convert content to JSON-serializable data (str or list of dicts)."""
    if isinstance(content, str):
        return content
    wire = []
    for part in content:
        if part.type == "image":
            wire.append({"type": "image", "data": part.data})
        else:
            wire.append({"type": "text", "text": part.text})
    return wire


def content_from_wire(raw) -> Content:
    """Inverse of :func:`content_to_wire`."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    parts = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        part_type = item.get("type", "text")
        if part_type == "image":
            parts.append(ContentPart(type="image", data=item.get("data", "")))
        else:
            parts.append(ContentPart(type="text", text=item.get("text", "")))
    return parts


def dump_content(content: Content) -> str:
    return json.dumps(content_to_wire(content), ensure_ascii=False)


def load_content(raw: str) -> Content:
    return content_from_wire(json.loads(raw))
