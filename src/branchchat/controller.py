"""Session orchestration: active branch, turns, edits and retries.

One :class:`ActiveBranchController` drives one open chat. All of its
mutable state lives on a :class:`SessionState`, so any number of chat
sessions can coexist in one process. At most one state-changing operation
runs at a time per session; a second one is rejected with
:class:`~branchchat.errors.OperationInProgress`.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .context import build_context_window
from .core import (
    HISTORY_TYPES,
    Branch,
    Chat,
    Content,
    Message,
    RequestMessage,
    new_id,
    plain_text,
    utcnow,
)
from .errors import (
    BranchSwitchFailed,
    NoPrecedingUserMessage,
    OperationInProgress,
    SearchError,
    StoreError,
    TransportError,
    UnknownBranch,
    UnknownChat,
)
from .fork import ForkEngine
from .search import SearchProvider, compose_reference_prompt
from .store import ConversationStore
from .transport import (
    ContentDelta,
    Finish,
    ModelSelector,
    ModelTransport,
    ReasoningDelta,
    StreamEvent,
    ToolCallRecord,
    UsageUpdate,
)
from .tree import ConversationTree
from .versions import VersionIndicator, resolve_versions, version_indicator

logger = logging.getLogger(__name__)

BREAK_TEXT = "Context cleared"


@dataclass
class SessionState:
    """Everything a chat session knows that is not in the store."""

    chat: Chat
    branches: list[Branch] = field(default_factory=list)
    active_branch_id: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    in_flight: bool = False
    search_status: str = "none"
    stream_task: Optional[asyncio.Task] = None


@dataclass(frozen=True)
class TurnResult:
    branch_id: str
    user_message: Message
    reply: Optional[Message]  # assistant text, error message, or None if stopped empty
    window: list[RequestMessage]
    stopped: bool = False


class _ReplyBuffer:
    """Accumulates streamed events into the pieces of an assistant message."""

    def __init__(self):
        self.content: list[str] = []
        self.reasoning: list[str] = []
        self.tool_calls: list[dict] = []
        self.input_tokens: Optional[int] = None
        self.output_tokens: Optional[int] = None
        self.total_tokens: Optional[int] = None
        self.finish_reason: Optional[str] = None

    def feed(self, event: StreamEvent) -> None:
        if isinstance(event, ContentDelta):
            self.content.append(event.text)
        elif isinstance(event, ReasoningDelta):
            self.reasoning.append(event.text)
        elif isinstance(event, UsageUpdate):
            if event.input_tokens is not None:
                self.input_tokens = event.input_tokens
            if event.output_tokens is not None:
                self.output_tokens = event.output_tokens
            if event.total_tokens is not None:
                self.total_tokens = event.total_tokens
        elif isinstance(event, ToolCallRecord):
            self.tool_calls.append(event.to_dict())
        elif isinstance(event, Finish):
            self.finish_reason = event.reason

    @property
    def has_output(self) -> bool:
        return bool(self.content or self.reasoning)


class ActiveBranchController:
    """Drives one chat: which branch is active, and every turn sent from it."""

    def __init__(
        self,
        store: ConversationStore,
        chat_id: str,
        transport: ModelTransport,
        search: Optional[SearchProvider] = None,
        tree: Optional[ConversationTree] = None,
        forks: Optional[ForkEngine] = None,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.chat_id = chat_id
        self.transport = transport
        self.search = search
        self.clock = clock
        self.tree = tree or ConversationTree(store, clock=clock)
        self.forks = forks or ForkEngine(self.tree, clock=clock)
        self.selector: Optional[ModelSelector] = None
        self._state: Optional[SessionState] = None

    @property
    def state(self) -> SessionState:
        if self._state is None:
            raise RuntimeError("Session not opened; call open() first")
        return self._state

    async def open(self) -> SessionState:
        """Load the chat, its branches, and activate the newest branch."""
        chat = await self.store.get_chat(self.chat_id)
        if chat is None:
            raise UnknownChat(self.chat_id)
        self._state = SessionState(chat=chat)
        self.selector = ModelSelector(
            provider_id=chat.default_provider or self.forks.default_provider,
            model=chat.default_model or self.forks.default_model,
        )
        self._state.branches = await self.tree.list_branches(chat.id)
        if self._state.branches:
            await self._activate(self._state.branches[-1].id)
        return self._state

    # ── Navigation ───────────────────────────────────────────────────

    async def switch_branch(self, branch_id: str) -> None:
        """Make ``branch_id`` the active branch and load its messages."""
        if branch_id == self.state.active_branch_id:
            return
        async with self._exclusive():
            await self._activate(branch_id)

    async def refresh_branches(self) -> list[Branch]:
        self.state.branches = await self.tree.list_branches(self.state.chat.id)
        return self.state.branches

    def versions_for(self, message_index: int) -> tuple[list[Branch], Optional[VersionIndicator]]:
        """Version group of the message at ``message_index`` and the "i/n" position."""
        message = self._message_at(message_index)
        group = resolve_versions(message, self.state.branches)
        indicator = version_indicator(group, self.state.active_branch_id, message.branch_id)
        return group, indicator

    def context_preview(self, pending_content: Optional[Content] = None) -> list[RequestMessage]:
        return build_context_window(self.state.messages, self.state.chat.policy, pending_content)

    # ── Turns ────────────────────────────────────────────────────────

    async def submit_user_turn(self, content: Content, search: bool = False) -> TurnResult:
        """Send a new user message on the active branch (or start the first one)."""
        async with self._exclusive():
            state = self.state
            if state.active_branch_id is None:
                result = await self.forks.create_root(
                    state.chat.id,
                    content,
                    provider_id=self.selector.provider_id,
                    model=self.selector.model,
                    search_enabled=search,
                )
                state.branches.append(result.branch)
                await self._activate(result.branch.id)
                user_message = result.message
            else:
                user_message = Message(
                    id=new_id(),
                    chat_id=state.chat.id,
                    branch_id=state.active_branch_id,
                    role="user",
                    type="text",
                    content=content,
                    created_at=self.clock(),
                    search_enabled=search,
                    provider_id=self.selector.provider_id,
                    model=self.selector.model,
                )
                await self._append(user_message)
            return await self._respond(user_message)

    async def edit_turn(self, message_index: int, new_content: Content) -> TurnResult:
        """Fork the active branch at ``message_index`` with edited user content."""
        async with self._exclusive():
            state = self.state
            target = self._message_at(message_index)
            if target.role != "user":
                raise ValueError(f"Only user messages can be edited (#{message_index} is {target.role})")
            result = await self.forks.fork_and_edit(
                state.chat.id,
                state.active_branch_id,
                target.id,
                new_content,
                state.messages[:message_index],
            )
            state.branches.append(result.branch)
            await self._activate(result.branch.id)
            return await self._respond(result.message)

    async def retry_turn(self, message_index: int) -> TurnResult:
        """Regenerate the reply to the user turn at or before ``message_index``.

        The regeneration is a new branch forked at that user message, so the
        previous reply stays reachable as a sibling version.
        """
        async with self._exclusive():
            state = self.state
            target = self._message_at(message_index)
            if target.role == "user":
                user_index = message_index
            elif target.role == "assistant":
                user_index = self._preceding_user_index(message_index)
            else:
                raise NoPrecedingUserMessage(message_index)
            user_message = state.messages[user_index]
            result = await self.forks.fork_for_regeneration(
                state.chat.id,
                state.active_branch_id,
                user_message.id,
                state.messages[:user_index],
            )
            state.branches.append(result.branch)
            await self._activate(result.branch.id)
            return await self._respond(result.message)

    async def add_break(self) -> Optional[Message]:
        """Append a context-reset marker; no-op if the branch already ends with one."""
        async with self._exclusive():
            state = self.state
            if state.active_branch_id is None:
                logger.warning("Cannot add a break to chat %s: no active branch", state.chat.id)
                return None
            if state.messages and state.messages[-1].type == "break":
                return None
            marker = Message(
                id=new_id(),
                chat_id=state.chat.id,
                branch_id=state.active_branch_id,
                role="system",
                type="break",
                content=BREAK_TEXT,
                created_at=self.clock(),
                provider_id=self.selector.provider_id,
                model=self.selector.model,
            )
            return await self._append(marker)

    def stop(self) -> bool:
        """Cancel the model call in flight, keeping whatever it produced so far."""
        task = self.state.stream_task
        if task is None or task.done():
            return False
        task.cancel()
        return True

    # ── Chat settings ────────────────────────────────────────────────

    async def update_policy(
        self,
        history_type: Optional[str] = None,
        history_count: Optional[int] = None,
        system_prompt: Optional[str] = None,
    ) -> Chat:
        """Persist new history settings. An empty ``system_prompt`` clears it."""
        changes = {}
        if history_type is not None:
            if history_type not in HISTORY_TYPES:
                raise ValueError(f"Unknown history type: {history_type!r}")
            changes["history_type"] = history_type
        if history_count is not None:
            changes["history_count"] = int(history_count)
        if system_prompt is not None:
            changes["system_prompt"] = system_prompt or None
        if not changes:
            return self.state.chat
        chat = await self.store.update_chat(replace(self.state.chat, **changes))
        self.state.chat = chat
        return chat

    def set_model(self, selector: ModelSelector) -> None:
        self.selector = selector

    # ── Private helpers ──────────────────────────────────────────────

    @asynccontextmanager
    async def _exclusive(self):
        state = self.state
        if state.in_flight:
            raise OperationInProgress(f"Chat {state.chat.id} is busy")
        state.in_flight = True
        try:
            yield
        finally:
            state.in_flight = False

    async def _activate(self, branch_id: str) -> None:
        state = self.state
        if branch_id == state.active_branch_id:
            return
        try:
            branch = await self.tree.get_branch(branch_id)
            if branch.chat_id != state.chat.id:
                raise BranchSwitchFailed(branch_id, "branch belongs to another chat")
            messages = await self.tree.list_messages(branch_id)
        except (UnknownBranch, StoreError) as e:
            logger.warning("Switch to branch %s failed: %s", branch_id, e)
            raise BranchSwitchFailed(branch_id, str(e)) from e

        if all(b.id != branch.id for b in state.branches):
            state.branches.append(branch)
        state.active_branch_id = branch.id
        state.messages = messages
        logger.info("Chat %s switched to branch %s (%d messages)", state.chat.id, branch.id, len(messages))

    async def _append(self, message: Message) -> Message:
        await self.tree.append_message(message.branch_id, message)
        if message.branch_id == self.state.active_branch_id:
            self.state.messages.append(message)
        return message

    def _message_at(self, index: int) -> Message:
        messages = self.state.messages
        if index < 0 or index >= len(messages):
            raise IndexError(f"No message at index {index} in the active branch")
        return messages[index]

    def _preceding_user_index(self, index: int) -> int:
        # Failed attempts (error messages) are skipped; anything else that is
        # not a user turn means there is nothing to regenerate from.
        for j in range(index - 1, -1, -1):
            candidate = self.state.messages[j]
            if candidate.type == "error":
                continue
            if candidate.role == "user" and candidate.type in ("text", "image"):
                return j
            break
        raise NoPrecedingUserMessage(index)

    async def _respond(self, user_message: Message) -> TurnResult:
        state = self.state
        branch_id = state.active_branch_id
        # The new user turn is the pending entry, so the "none" policy still sends it
        history = [m for m in state.messages if m.id != user_message.id]
        window = build_context_window(history, state.chat.policy, user_message.content)
        logger.debug("Branch %s: sending %d context entries", branch_id, len(window))

        search_status, search_result = "none", None
        if user_message.search_enabled:
            window, search_status, search_result = await self._apply_search(window, user_message)
            if search_status != "none":
                user_message = await self._record_search(user_message, search_status, search_result)

        buffer = _ReplyBuffer()
        selector = self.selector
        task = asyncio.create_task(self._consume(window, selector, buffer))
        state.stream_task = task
        try:
            await task
        except TransportError as e:
            logger.warning("Model call on branch %s failed (%s): %s", branch_id, e.kind, e.message)
            reply = await self._append(Message(
                id=new_id(),
                chat_id=state.chat.id,
                branch_id=branch_id,
                role="assistant",
                type="error",
                content=e.message,
                created_at=self.clock(),
                search_enabled=user_message.search_enabled,
                search_status=search_status,
                search_result=search_result,
                provider_id=selector.provider_id,
                model=selector.model,
                error_type=e.kind,
                error_message=e.message,
            ))
            return TurnResult(branch_id, user_message, reply, window)
        except asyncio.CancelledError:
            reply = None
            if buffer.has_output:
                logger.warning("Model call on branch %s cancelled; keeping partial reply", branch_id)
                reply = await self._append(
                    self._reply_message(buffer, branch_id, selector, user_message, search_status, search_result)
                )
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return TurnResult(branch_id, user_message, reply, window, stopped=True)
        finally:
            state.stream_task = None

        reply = await self._append(
            self._reply_message(buffer, branch_id, selector, user_message, search_status, search_result)
        )
        return TurnResult(branch_id, user_message, reply, window)

    async def _consume(
        self, window: list[RequestMessage], selector: ModelSelector, buffer: _ReplyBuffer
    ) -> None:
        async for event in self.transport.stream(window, selector):
            buffer.feed(event)

    def _reply_message(
        self,
        buffer: _ReplyBuffer,
        branch_id: str,
        selector: ModelSelector,
        user_message: Message,
        search_status: str,
        search_result: Optional[dict],
    ) -> Message:
        return Message(
            id=new_id(),
            chat_id=self.state.chat.id,
            branch_id=branch_id,
            role="assistant",
            type="text",
            content="".join(buffer.content),
            created_at=self.clock(),
            reasoning="".join(buffer.reasoning) or None,
            input_tokens=buffer.input_tokens,
            output_tokens=buffer.output_tokens,
            total_tokens=buffer.total_tokens,
            search_enabled=user_message.search_enabled,
            search_status=search_status,
            search_result=search_result,
            provider_id=selector.provider_id,
            model=selector.model,
            tool_calls=buffer.tool_calls,
        )

    async def _apply_search(
        self, window: list[RequestMessage], user_message: Message
    ) -> tuple[list[RequestMessage], str, Optional[dict]]:
        """Rewrite the last user entry with search references when search succeeds."""
        query = plain_text(user_message.content).strip()
        if self.search is None or not query:
            if self.search is None:
                logger.warning("Search requested but no search provider is configured")
            return window, "none", None

        self.state.search_status = "searching"
        try:
            results = await self.search.search(query)
        except SearchError as e:
            logger.warning("Search for %r failed: %s", query[:80], e)
            self.state.search_status = "error"
            return window, "error", None
        self.state.search_status = "done"

        rewritten = list(window)
        for i in range(len(rewritten) - 1, -1, -1):
            if rewritten[i].role == "user":
                rewritten[i] = RequestMessage(role="user", content=compose_reference_prompt(query, results))
                break
        return rewritten, "done", results

    async def _record_search(
        self, user_message: Message, search_status: str, search_result: Optional[dict]
    ) -> Message:
        updated = await self.store.update_message_search(
            user_message.id, True, search_status, search_result
        )
        messages = self.state.messages
        for i, msg in enumerate(messages):
            if msg.id == updated.id:
                messages[i] = updated
                break
        return updated
