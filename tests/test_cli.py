"""Tests for the command-line interface."""

import asyncio
import json
from datetime import datetime, timezone

import pytest
from click.testing import CliRunner

from branchchat.backends.sqlite import SQLiteStore
from branchchat.cli import main
from branchchat.core import Branch, Chat

from conftest import make_message

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "chats.db"
    monkeypatch.setenv("BRANCHCHAT_STORE", "sqlite")
    monkeypatch.setenv("BRANCHCHAT_DB_PATH", str(path))

    async def seed():
        store = SQLiteStore(path)
        await store.create_chat(Chat(id="c1", title="Weekend", created_at=T0))
        await store.insert_branch(Branch(id="root", chat_id="c1", name="main", created_at=T0), [])
        await store.insert_message(make_message("user", "hello", branch_id="root", id="m1", created_at=T0))
        fork = Branch(id="alt", chat_id="c1", created_at=T0, parent_branch_id="root", forked_from_message_id="m1")
        await store.insert_branch(fork, [make_message("user", "hi", branch_id="alt", created_at=T0)])

    asyncio.run(seed())
    return path


def test_branches_prints_forest(db_path):
    result = CliRunner().invoke(main, ["branches", "c1"])
    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0] == "- root  main"
    assert lines[1] == "  - alt  alt  (from message m1)"


def test_branches_unknown_chat(db_path):
    result = CliRunner().invoke(main, ["branches", "nope"])
    assert result.exit_code != 0
    assert "No branches" in result.output


def test_export_markdown(db_path):
    result = CliRunner().invoke(main, ["export", "alt"])
    assert result.exit_code == 0
    assert "# Weekend" in result.output
    assert "hi" in result.output


def test_export_json(db_path):
    result = CliRunner().invoke(main, ["export", "root", "--format", "json"])
    assert result.exit_code == 0
    data = json.loads(result.output)
    assert [m["content"] for m in data["messages"]] == ["hello"]


def test_export_unknown_branch(db_path):
    result = CliRunner().invoke(main, ["export", "ghost"])
    assert result.exit_code != 0
