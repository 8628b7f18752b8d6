"""Abstract base class for conversation persistence backends."""

from abc import ABC, abstractmethod
from typing import Optional

from .core import Branch, Chat, Message


class ConversationStore(ABC):
    """Base class for chat/branch/message storage.

    Each backend (in-memory, SQLite) implements this interface. Reads return
    entities ordered by creation time, ties broken by insertion order.
    Backend failures surface as :class:`~branchchat.errors.StoreError`.
    """

    name: str  # "memory", "sqlite"

    @abstractmethod
    async def create_chat(self, chat: Chat) -> Chat:
        ...

    @abstractmethod
    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        ...

    @abstractmethod
    async def update_chat(self, chat: Chat) -> Chat:
        """Replace the stored chat row with ``chat``."""
        ...

    @abstractmethod
    async def list_branches(self, chat_id: str) -> list[Branch]:
        ...

    @abstractmethod
    async def get_branch(self, branch_id: str) -> Optional[Branch]:
        ...

    @abstractmethod
    async def insert_branch(self, branch: Branch, messages: list[Message]) -> Branch:
        """Insert a branch and its initial messages in one atomic step.

        Either the branch and all messages become visible, or none of them do.
        """
        ...

    @abstractmethod
    async def rename_branch(self, branch_id: str, name: Optional[str]) -> Branch:
        ...

    @abstractmethod
    async def insert_message(self, message: Message) -> Message:
        ...

    @abstractmethod
    async def get_message(self, message_id: str) -> Optional[Message]:
        ...

    @abstractmethod
    async def list_messages(self, branch_id: str) -> list[Message]:
        ...

    @abstractmethod
    async def update_message_search(
        self,
        message_id: str,
        search_enabled: bool,
        search_status: str,
        search_result: Optional[dict] = None,
    ) -> Message:
        """Record the outcome of a web search on an existing message."""
        ...
