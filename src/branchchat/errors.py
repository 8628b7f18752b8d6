"""Exceptions raised by branchchat."""


class BranchChatError(Exception):
    """Base class for all branchchat errors."""


class UnknownChat(BranchChatError):
    def __init__(self, chat_id: str):
        super().__init__(f"Unknown chat: {chat_id}")
        self.chat_id = chat_id


class UnknownBranch(BranchChatError):
    def __init__(self, branch_id: str):
        super().__init__(f"Unknown branch: {branch_id}")
        self.branch_id = branch_id


class MessageNotInBranch(BranchChatError):
    def __init__(self, message_id: str, branch_id: str):
        super().__init__(f"Message {message_id} does not belong to branch {branch_id}")
        self.message_id = message_id
        self.branch_id = branch_id


class InvalidForkPoint(BranchChatError):
    """A fork references a message that is missing or outside its parent branch."""


class BranchCycleDetected(BranchChatError):
    def __init__(self, branch_id: str):
        super().__init__(f"Parent links from branch {branch_id} do not reach a root")
        self.branch_id = branch_id


class ForkCreationFailed(BranchChatError):
    """The new branch or one of its messages could not be persisted."""


class BranchSwitchFailed(BranchChatError):
    def __init__(self, branch_id: str, reason: str = ""):
        msg = f"Failed to switch to branch {branch_id}"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.branch_id = branch_id


class NoPrecedingUserMessage(BranchChatError):
    def __init__(self, index: int):
        super().__init__(f"No user message precedes message #{index}")
        self.index = index


class OperationInProgress(BranchChatError):
    """Another branch mutation is still running for this chat session."""


class StoreError(BranchChatError):
    """The persistence backend failed to read or write."""


class SearchError(BranchChatError):
    """The search provider failed to return results."""


class TransportError(BranchChatError):
    """A model request failed.

    ``kind`` is one of ``timeout``, ``quota_exceeded``,
    ``invalid_credential`` or ``unknown``.
    """

    KINDS = ("timeout", "quota_exceeded", "invalid_credential", "unknown")

    def __init__(self, kind: str, message: str = ""):
        if kind not in self.KINDS:
            kind = "unknown"
        super().__init__(message or kind)
        self.kind = kind
        self.message = message or kind
