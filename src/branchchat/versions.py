"""Resolve which branches are alternate versions of the same turn.

Everything here is a filter-and-sort over the flat branch list of a chat,
so the grouping and tie-break rules can be tested without any session state.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .core import Branch, Message


@dataclass(frozen=True)
class VersionIndicator:
    """Position of the active branch within its version group."""

    index: int  # 1-based
    total: int
    previous_branch_id: Optional[str] = None
    next_branch_id: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.index}/{self.total}"


def _version_order(branch: Branch):
    return (branch.created_at, branch.id)


def _ordered(branches: Iterable[Branch]) -> list[Branch]:
    unique = {b.id: b for b in branches}
    return sorted(unique.values(), key=_version_order)


def _fork_family(branch: Branch, by_id: dict[str, Branch]) -> list[Branch]:
    """The parent of a fork plus every branch forked at the same point."""
    family = [b for b in by_id.values() if b.is_fork and b.fork_key == branch.fork_key]
    parent = by_id.get(branch.parent_branch_id)
    if parent is not None:
        family.append(parent)
    return family


def versions_for_user_message(message: Message, branches: list[Branch]) -> list[Branch]:
    """Branches holding alternate edits of a user turn.

    That is the message's own branch, every branch forked from the message,
    and, when the message's branch is itself a fork, its parent and the
    sibling forks made at the same point.
    """
    by_id = {b.id: b for b in branches}
    group = [b for b in branches if b.forked_from_message_id == message.id]
    own = by_id.get(message.branch_id)
    if own is not None:
        group.append(own)
        if own.is_fork:
            group.extend(_fork_family(own, by_id))
    return _ordered(group)


def versions_for_assistant_message(message: Message, branches: list[Branch]) -> list[Branch]:
    """Branches holding alternate regenerations of an assistant turn."""
    by_id = {b.id: b for b in branches}
    own = by_id.get(message.branch_id)
    if own is None:
        return []
    if not own.is_fork:
        return [own]
    return _ordered(_fork_family(own, by_id) + [own])


def resolve_versions(message: Message, branches: list[Branch]) -> list[Branch]:
    if message.role == "user":
        return versions_for_user_message(message, branches)
    if message.role == "assistant":
        return versions_for_assistant_message(message, branches)
    return [b for b in branches if b.id == message.branch_id]


def version_indicator(
    group: list[Branch],
    active_branch_id: Optional[str],
    fallback_branch_id: Optional[str] = None,
) -> Optional[VersionIndicator]:
    """Return the "i / n" position of the active branch, or None.

    None means no navigation control should be shown (a group of one).
    When the active branch is not in the group, ``fallback_branch_id``
    (usually the message's own branch) is located instead.
    """
    if len(group) <= 1:
        return None
    ids = [b.id for b in group]
    if active_branch_id in ids:
        pos = ids.index(active_branch_id)
    elif fallback_branch_id in ids:
        pos = ids.index(fallback_branch_id)
    else:
        return None
    return VersionIndicator(
        index=pos + 1,
        total=len(ids),
        previous_branch_id=ids[pos - 1] if pos > 0 else None,
        next_branch_id=ids[pos + 1] if pos + 1 < len(ids) else None,
    )
