"""Tests for the conversation tree and its invariants."""

from datetime import timedelta

import pytest

from branchchat.core import Branch, Message, new_id
from branchchat.errors import (
    BranchCycleDetected,
    InvalidForkPoint,
    MessageNotInBranch,
    UnknownBranch,
)
from branchchat.tree import ConversationTree


def user_message(branch_id, text, when, chat_id="chat-1"):
    return Message(
        id=new_id(), chat_id=chat_id, branch_id=branch_id, role="user",
        content=text, created_at=when,
    )


@pytest.fixture
def tree(memory_store, clock):
    return ConversationTree(memory_store, clock=clock)


@pytest.mark.asyncio
async def test_create_root_branch(tree, chat):
    root = await tree.create_branch(chat.id)
    assert root.parent_branch_id is None
    assert root.forked_from_message_id is None
    assert not root.is_fork
    assert await tree.list_branches(chat.id) == [root]


@pytest.mark.asyncio
async def test_several_roots_per_chat(tree, chat):
    first = await tree.create_branch(chat.id, name="first")
    second = await tree.create_branch(chat.id, name="second")
    assert [b.id for b in await tree.list_branches(chat.id)] == [first.id, second.id]


@pytest.mark.asyncio
async def test_fork_requires_message_in_parent(tree, chat, clock):
    a = await tree.create_branch(chat.id)
    b = await tree.create_branch(chat.id)
    msg = await tree.append_message(b.id, user_message(b.id, "in b", clock()))

    with pytest.raises(InvalidForkPoint):
        await tree.create_branch(chat.id, parent_branch_id=a.id, forked_from_message_id=msg.id)

    fork = await tree.create_branch(chat.id, parent_branch_id=b.id, forked_from_message_id=msg.id)
    assert fork.is_fork


@pytest.mark.asyncio
async def test_fork_requires_both_links(tree, chat):
    a = await tree.create_branch(chat.id)
    with pytest.raises(InvalidForkPoint):
        await tree.create_branch(chat.id, parent_branch_id=a.id)


@pytest.mark.asyncio
async def test_fork_of_missing_message_or_parent(tree, chat):
    a = await tree.create_branch(chat.id)
    with pytest.raises(InvalidForkPoint):
        await tree.create_branch(chat.id, parent_branch_id=a.id, forked_from_message_id="nope")
    with pytest.raises(InvalidForkPoint):
        await tree.create_branch(chat.id, parent_branch_id="ghost", forked_from_message_id="nope")


@pytest.mark.asyncio
async def test_append_to_unknown_branch(tree, clock):
    with pytest.raises(UnknownBranch):
        await tree.append_message("ghost", user_message("ghost", "hi", clock()))


@pytest.mark.asyncio
async def test_append_rejects_message_for_other_branch(tree, chat, clock):
    a = await tree.create_branch(chat.id)
    with pytest.raises(MessageNotInBranch):
        await tree.append_message(a.id, user_message("other", "hi", clock()))


@pytest.mark.asyncio
async def test_append_rejects_out_of_order_timestamp(tree, chat, clock):
    a = await tree.create_branch(chat.id)
    later = clock()
    await tree.append_message(a.id, user_message(a.id, "second", later))
    with pytest.raises(ValueError):
        await tree.append_message(a.id, user_message(a.id, "first", later - timedelta(seconds=5)))


@pytest.mark.asyncio
async def test_list_messages_is_append_only(tree, chat, clock):
    a = await tree.create_branch(chat.id)
    await tree.append_message(a.id, user_message(a.id, "one", clock()))
    before = await tree.list_messages(a.id)
    await tree.append_message(a.id, user_message(a.id, "two", clock()))
    after = await tree.list_messages(a.id)
    assert after[: len(before)] == before
    assert [m.content for m in after] == ["one", "two"]


@pytest.mark.asyncio
async def test_equal_timestamps_keep_insertion_order(tree, chat, clock):
    a = await tree.create_branch(chat.id)
    when = clock()
    for text in ["x", "y", "z"]:
        await tree.append_message(a.id, user_message(a.id, text, when))
    assert [m.content for m in await tree.list_messages(a.id)] == ["x", "y", "z"]


@pytest.mark.asyncio
async def test_list_messages_unknown_branch(tree):
    with pytest.raises(UnknownBranch):
        await tree.list_messages("ghost")


@pytest.mark.asyncio
async def test_lineage_reaches_root_within_branch_count(tree, chat, clock):
    current = await tree.create_branch(chat.id)
    root_id = current.id
    for i in range(4):
        msg = await tree.append_message(current.id, user_message(current.id, f"m{i}", clock()))
        current = await tree.create_branch(chat.id, parent_branch_id=current.id, forked_from_message_id=msg.id)

    branches = await tree.list_branches(chat.id)
    for b in branches:
        chain = await tree.lineage(b.id)
        assert len(chain) <= len(branches)
        assert chain[-1].id == root_id
        assert chain[-1].parent_branch_id is None


@pytest.mark.asyncio
async def test_lineage_detects_cycle(memory_store, tree, chat, clock):
    # Corrupt data written around the tree's validation
    when = clock()
    await memory_store.insert_branch(
        Branch(id="x", chat_id=chat.id, created_at=when, parent_branch_id="y", forked_from_message_id="m"), []
    )
    await memory_store.insert_branch(
        Branch(id="y", chat_id=chat.id, created_at=when, parent_branch_id="x", forked_from_message_id="m"), []
    )
    with pytest.raises(BranchCycleDetected):
        await tree.lineage("x")


@pytest.mark.asyncio
async def test_rename_branch(tree, chat):
    a = await tree.create_branch(chat.id, name="old")
    renamed = await tree.rename_branch(a.id, "new")
    assert renamed.name == "new"
    assert (await tree.get_branch(a.id)).name == "new"
