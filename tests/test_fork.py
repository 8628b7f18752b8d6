"""Tests for the fork engine."""

from unittest.mock import patch

import pytest

from branchchat.core import Message, new_id
from branchchat.errors import ForkCreationFailed, MessageNotInBranch, StoreError
from branchchat.fork import ForkEngine, plan_fork
from branchchat.tree import ConversationTree


@pytest.fixture
def tree(memory_store, clock):
    return ConversationTree(memory_store, clock=clock)


@pytest.fixture
def forks(tree, clock):
    return ForkEngine(tree, default_provider="acme", default_model="acme-1", clock=clock)


async def seed_branch(tree, chat, clock):
    """Root branch with u1, a1, u2, a2."""
    root = await tree.create_branch(chat.id)
    turns = [
        ("user", "u1", "openai", "gpt-4o-mini"),
        ("assistant", "a1", "openai", "gpt-4o-mini"),
        ("user", "u2", "anthropic", "claude-x"),
        ("assistant", "a2", "anthropic", "claude-x"),
    ]
    for role, text, provider, model in turns:
        await tree.append_message(root.id, Message(
            id=new_id(), chat_id=chat.id, branch_id=root.id, role=role, content=text,
            created_at=clock(), provider_id=provider, model=model, input_tokens=3,
        ))
    return root, await tree.list_messages(root.id)


@pytest.mark.asyncio
async def test_fork_and_edit_copies_prefix_and_appends_edit(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    result = await forks.fork_and_edit(chat.id, root.id, messages[2].id, "u2 edited", messages[:2])

    assert result.branch.parent_branch_id == root.id
    assert result.branch.forked_from_message_id == messages[2].id
    assert result.branch.name.startswith("Branch created at ")

    new_messages = await tree.list_messages(result.branch.id)
    assert [(m.role, m.content) for m in new_messages] == [
        ("user", "u1"), ("assistant", "a1"), ("user", "u2 edited"),
    ]
    assert all(m.branch_id == result.branch.id for m in new_messages)
    assert {m.id for m in new_messages}.isdisjoint({m.id for m in messages})
    assert new_messages[0].input_tokens == 3
    assert result.message == new_messages[-1]


@pytest.mark.asyncio
async def test_source_branch_is_untouched(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    await forks.fork_and_edit(chat.id, root.id, messages[2].id, "changed", messages[:2])
    assert await tree.list_messages(root.id) == messages


@pytest.mark.asyncio
async def test_edit_uses_provider_of_most_recent_prior_message(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    result = await forks.fork_and_edit(chat.id, root.id, messages[3].id, "again", messages[:3])
    assert (result.message.provider_id, result.message.model) == ("anthropic", "claude-x")


@pytest.mark.asyncio
async def test_edit_of_first_message_uses_default_model(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    result = await forks.fork_and_edit(chat.id, root.id, messages[0].id, "start over", [])
    assert (result.message.provider_id, result.message.model) == ("acme", "acme-1")
    assert len(await tree.list_messages(result.branch.id)) == 1


@pytest.mark.asyncio
async def test_edited_message_must_belong_to_source(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    other = await tree.create_branch(chat.id)
    with pytest.raises(MessageNotInBranch):
        await forks.fork_and_edit(chat.id, other.id, messages[0].id, "x", [])
    with pytest.raises(MessageNotInBranch):
        await forks.fork_and_edit(chat.id, root.id, "missing", "x", [])


@pytest.mark.asyncio
async def test_failed_commit_leaves_no_branch(memory_store, tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    before = await tree.list_branches(chat.id)
    with patch.object(memory_store, "insert_branch", side_effect=StoreError("disk full")):
        with pytest.raises(ForkCreationFailed):
            await forks.fork_and_edit(chat.id, root.id, messages[2].id, "x", messages[:2])
    assert await tree.list_branches(chat.id) == before


@pytest.mark.asyncio
async def test_fork_for_regeneration_keeps_content(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    result = await forks.fork_for_regeneration(chat.id, root.id, messages[2].id, messages[:2])
    assert result.message.content == "u2"
    assert result.branch.forked_from_message_id == messages[2].id


@pytest.mark.asyncio
async def test_fork_for_regeneration_rejects_assistant_message(tree, forks, chat, clock):
    root, messages = await seed_branch(tree, chat, clock)
    with pytest.raises(ValueError):
        await forks.fork_for_regeneration(chat.id, root.id, messages[1].id, messages[:1])


@pytest.mark.asyncio
async def test_create_root(tree, forks, chat):
    result = await forks.create_root(chat.id, "first question", provider_id="openai", model="gpt-4o")
    assert not result.branch.is_fork
    messages = await tree.list_messages(result.branch.id)
    assert [m.content for m in messages] == ["first question"]
    assert messages[0].model == "gpt-4o"


def test_plan_fork_is_pure(clock):
    prefix = [Message(id="m1", chat_id="c", branch_id="src", role="user", content="hi", created_at=clock())]
    now = clock()
    branch, planned = plan_fork("c", "edit", prefix, now, "p", "m", source_branch_id="src", fork_point_id="m2")
    assert prefix[0].branch_id == "src"
    assert [m.branch_id for m in planned] == [branch.id, branch.id]
    assert planned[0].id != "m1"
    assert all(m.created_at == now for m in planned)
