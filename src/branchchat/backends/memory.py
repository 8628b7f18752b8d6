"""In-process conversation store.

Arena-style storage: flat dicts keyed by identifier, with insertion order
preserved by the dicts themselves. Useful for tests and ephemeral sessions.
"""

import logging
from dataclasses import replace
from typing import Optional

from ..core import Branch, Chat, Message
from ..errors import StoreError
from ..store import ConversationStore

logger = logging.getLogger(__name__)


class MemoryStore(ConversationStore):
    """Store that keeps everything in memory for the life of the process."""

    name = "memory"

    def __init__(self):
        self._chats: dict[str, Chat] = {}
        self._branches: dict[str, Branch] = {}
        self._messages: dict[str, Message] = {}

    async def create_chat(self, chat: Chat) -> Chat:
        if chat.id in self._chats:
            raise StoreError(f"Chat already exists: {chat.id}")
        self._chats[chat.id] = chat
        return chat

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        return self._chats.get(chat_id)

    async def update_chat(self, chat: Chat) -> Chat:
        if chat.id not in self._chats:
            raise StoreError(f"Chat not found: {chat.id}")
        self._chats[chat.id] = chat
        return chat

    async def list_branches(self, chat_id: str) -> list[Branch]:
        branches = [b for b in self._branches.values() if b.chat_id == chat_id]
        # sort() is stable, so insertion order breaks timestamp ties
        branches.sort(key=lambda b: b.created_at)
        return branches

    async def get_branch(self, branch_id: str) -> Optional[Branch]:
        return self._branches.get(branch_id)

    async def insert_branch(self, branch: Branch, messages: list[Message]) -> Branch:
        if branch.id in self._branches:
            raise StoreError(f"Branch already exists: {branch.id}")
        for msg in messages:
            if msg.id in self._messages:
                raise StoreError(f"Message already exists: {msg.id}")
            if msg.branch_id != branch.id:
                raise StoreError(f"Message {msg.id} does not target branch {branch.id}")
        self._branches[branch.id] = branch
        for msg in messages:
            self._messages[msg.id] = msg
        return branch

    async def rename_branch(self, branch_id: str, name: Optional[str]) -> Branch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise StoreError(f"Branch not found: {branch_id}")
        renamed = replace(branch, name=name)
        self._branches[branch_id] = renamed
        return renamed

    async def insert_message(self, message: Message) -> Message:
        if message.id in self._messages:
            raise StoreError(f"Message already exists: {message.id}")
        self._messages[message.id] = message
        return message

    async def get_message(self, message_id: str) -> Optional[Message]:
        return self._messages.get(message_id)

    async def list_messages(self, branch_id: str) -> list[Message]:
        messages = [m for m in self._messages.values() if m.branch_id == branch_id]
        messages.sort(key=lambda m: m.created_at)
        return messages

    async def update_message_search(
        self,
        message_id: str,
        search_enabled: bool,
        search_status: str,
        search_result: Optional[dict] = None,
    ) -> Message:
        msg = self._messages.get(message_id)
        if msg is None:
            raise StoreError(f"Message not found: {message_id}")
        updated = replace(
            msg,
            search_enabled=search_enabled,
            search_status=search_status,
            search_result=search_result,
        )
        self._messages[message_id] = updated
        return updated
