"""The conversation tree: branches, messages and their invariants.

Branches and messages live in flat, identifier-keyed collections (the store
plus a branch cache here). Parent and fork-point links are plain ids, so the
invariant checks below are linear lookups rather than object-graph walks.
"""

import logging
from typing import Callable, Optional

from .core import Branch, Message, new_id, utcnow
from .errors import (
    BranchCycleDetected,
    InvalidForkPoint,
    MessageNotInBranch,
    UnknownBranch,
)
from .store import ConversationStore

logger = logging.getLogger(__name__)


class ConversationTree:
    """Owns the branch/message collections of the chats in one store."""

    def __init__(self, store: ConversationStore, clock: Callable = utcnow):
        self.store = store
        self.clock = clock
        self._branches: dict[str, Branch] = {}

    async def list_branches(self, chat_id: str) -> list[Branch]:
        branches = await self.store.list_branches(chat_id)
        for b in branches:
            self._branches[b.id] = b
        return branches

    async def get_branch(self, branch_id: str) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            branch = await self.store.get_branch(branch_id)
            if branch is None:
                raise UnknownBranch(branch_id)
            self._branches[branch_id] = branch
        return branch

    async def list_messages(self, branch_id: str) -> list[Message]:
        await self.get_branch(branch_id)
        return await self.store.list_messages(branch_id)

    async def append_message(self, branch_id: str, message: Message) -> Message:
        """Append ``message`` to the end of a branch.

        Raises UnknownBranch if the branch does not exist. The message must
        already name ``branch_id`` and must not predate the branch's tail.
        """
        branch = await self.get_branch(branch_id)
        if message.branch_id != branch.id:
            raise MessageNotInBranch(message.id, branch.id)
        existing = await self.store.list_messages(branch.id)
        if existing and message.created_at < existing[-1].created_at:
            raise ValueError(
                f"Message {message.id} predates the tail of branch {branch.id}"
            )
        return await self.store.insert_message(message)

    async def create_branch(
        self,
        chat_id: str,
        parent_branch_id: Optional[str] = None,
        forked_from_message_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Branch:
        branch = Branch(
            id=new_id(),
            chat_id=chat_id,
            created_at=self.clock(),
            name=name,
            forked_from_message_id=forked_from_message_id,
            parent_branch_id=parent_branch_id,
        )
        return await self.commit_branch(branch, [])

    async def commit_branch(self, branch: Branch, messages: list[Message]) -> Branch:
        """Validate the fork point and persist a branch with its first messages."""
        await self.check_fork_point(branch)
        await self.store.insert_branch(branch, messages)
        self._branches[branch.id] = branch
        if branch.is_fork:
            logger.info(
                "Created branch %s forked from message %s of %s",
                branch.id, branch.forked_from_message_id, branch.parent_branch_id,
            )
        else:
            logger.info("Created root branch %s in chat %s", branch.id, branch.chat_id)
        return branch

    async def check_fork_point(self, branch: Branch) -> None:
        """Raise InvalidForkPoint unless ``branch`` is a root or a valid fork."""
        parent_id = branch.parent_branch_id
        message_id = branch.forked_from_message_id
        if parent_id is None and message_id is None:
            return
        if parent_id is None or message_id is None:
            raise InvalidForkPoint(
                "A fork needs both a parent branch and a fork-point message"
            )
        try:
            parent = await self.get_branch(parent_id)
        except UnknownBranch as e:
            raise InvalidForkPoint(f"Parent branch {parent_id} does not exist") from e
        if parent.chat_id != branch.chat_id:
            raise InvalidForkPoint(f"Parent branch {parent_id} belongs to another chat")
        message = await self.store.get_message(message_id)
        if message is None:
            raise InvalidForkPoint(f"Fork-point message {message_id} does not exist")
        if message.branch_id != parent_id:
            raise InvalidForkPoint(
                f"Fork-point message {message_id} is not in parent branch {parent_id}"
            )

    async def lineage(self, branch_id: str) -> list[Branch]:
        """Return the branch followed by its ancestors, ending at a root."""
        branch = await self.get_branch(branch_id)
        limit = len(await self.list_branches(branch.chat_id))
        chain = [branch]
        seen = {branch.id}
        while branch.parent_branch_id is not None:
            if len(chain) > limit:
                raise BranchCycleDetected(branch_id)
            branch = await self.get_branch(branch.parent_branch_id)
            if branch.id in seen:
                raise BranchCycleDetected(branch_id)
            seen.add(branch.id)
            chain.append(branch)
        return chain

    async def rename_branch(self, branch_id: str, name: Optional[str]) -> Branch:
        await self.get_branch(branch_id)
        branch = await self.store.rename_branch(branch_id, name)
        self._branches[branch_id] = branch
        return branch
