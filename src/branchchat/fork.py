"""Copy-on-write branching.

Editing or regenerating a turn never mutates the source branch. Instead a
new branch is planned as a pure function of the source snapshot (a copy of
the history prefix plus one fresh user message) and then committed in one
atomic store operation.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from .config import get_default_model, get_default_provider
from .core import Branch, Content, Message, new_id, utcnow
from .errors import ForkCreationFailed, MessageNotInBranch, StoreError
from .tree import ConversationTree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForkResult:
    branch: Branch
    message: Message  # the newly appended user message


def plan_fork(
    chat_id: str,
    new_content: Content,
    history_prefix: list[Message],
    now: datetime,
    default_provider: str,
    default_model: str,
    source_branch_id: Optional[str] = None,
    fork_point_id: Optional[str] = None,
    name: Optional[str] = None,
    search_enabled: bool = False,
) -> tuple[Branch, list[Message]]:
    """Build, without side effects, the branch and messages a fork will insert.

    The returned list holds copies of ``history_prefix`` rebound to the new
    branch followed by the new user message.
    """
    branch = Branch(
        id=new_id(),
        chat_id=chat_id,
        created_at=now,
        name=name if name is not None else f"Branch created at {now.isoformat()}",
        forked_from_message_id=fork_point_id,
        parent_branch_id=source_branch_id,
    )

    copies = [
        replace(msg, id=new_id(), chat_id=chat_id, branch_id=branch.id, created_at=now)
        for msg in history_prefix
    ]

    provider_id, model = default_provider, default_model
    for msg in reversed(history_prefix):
        if msg.provider_id and msg.model:
            provider_id, model = msg.provider_id, msg.model
            break

    edited = Message(
        id=new_id(),
        chat_id=chat_id,
        branch_id=branch.id,
        role="user",
        type="text",
        content=new_content,
        created_at=now,
        search_enabled=search_enabled,
        provider_id=provider_id,
        model=model,
    )
    return branch, copies + [edited]


class ForkEngine:
    """Creates new branches for edits, regenerations and first turns."""

    def __init__(
        self,
        tree: ConversationTree,
        default_provider: Optional[str] = None,
        default_model: Optional[str] = None,
        clock: Callable = utcnow,
    ):
        self.tree = tree
        self.default_provider = default_provider or get_default_provider()
        self.default_model = default_model or get_default_model()
        self.clock = clock

    async def fork_and_edit(
        self,
        chat_id: str,
        source_branch_id: str,
        edited_message_id: str,
        new_content: Content,
        history_prefix: list[Message],
    ) -> ForkResult:
        """Branch off ``source_branch_id`` with ``edited_message_id`` replaced.

        ``history_prefix`` is the source branch's messages strictly before
        the edited one.
        """
        source = await self.tree.get_branch(source_branch_id)
        edited = await self.tree.store.get_message(edited_message_id)
        if edited is None or edited.branch_id != source.id:
            raise MessageNotInBranch(edited_message_id, source.id)
        for msg in history_prefix:
            if msg.branch_id != source.id:
                raise MessageNotInBranch(msg.id, source.id)

        branch, messages = plan_fork(
            chat_id,
            new_content,
            history_prefix,
            now=self.clock(),
            default_provider=self.default_provider,
            default_model=self.default_model,
            source_branch_id=source.id,
            fork_point_id=edited.id,
            search_enabled=edited.search_enabled,
        )
        return await self._commit(branch, messages)

    async def fork_for_regeneration(
        self,
        chat_id: str,
        source_branch_id: str,
        user_message_id: str,
        history_prefix: list[Message],
    ) -> ForkResult:
        """Fork at a user message keeping its content, to get an alternate reply."""
        message = await self.tree.store.get_message(user_message_id)
        if message is None or message.branch_id != source_branch_id:
            raise MessageNotInBranch(user_message_id, source_branch_id)
        if message.role != "user":
            raise ValueError(f"Message {user_message_id} is not a user message")
        return await self.fork_and_edit(
            chat_id, source_branch_id, user_message_id, message.content, history_prefix
        )

    async def create_root(
        self,
        chat_id: str,
        content: Content,
        provider_id: Optional[str] = None,
        model: Optional[str] = None,
        search_enabled: bool = False,
    ) -> ForkResult:
        """Start a new root branch holding just one user message."""
        branch, messages = plan_fork(
            chat_id,
            content,
            [],
            now=self.clock(),
            default_provider=provider_id or self.default_provider,
            default_model=model or self.default_model,
            search_enabled=search_enabled,
        )
        return await self._commit(branch, messages)

    async def _commit(self, branch: Branch, messages: list[Message]) -> ForkResult:
        try:
            await self.tree.commit_branch(branch, messages)
        except StoreError as e:
            logger.warning("Fork %s could not be committed: %s", branch.id, e)
            raise ForkCreationFailed(f"Failed to create branch {branch.id}: {e}") from e
        return ForkResult(branch=branch, message=messages[-1])
