"""CLI entry point for branchchat."""

import asyncio

import click
import uvicorn

from .backends import get_store
from .export import branch_to_json, branch_to_markdown


@click.group()
def main():
    """Branchable chat history: edit any turn without losing the old timeline."""
    pass


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
def serve(port: int, host: str):
    """Start the JSON API."""
    click.echo(f"Starting branchchat on http://{host}:{port}")
    uvicorn.run("branchchat.server:app", host=host, port=port, reload=False)


@main.command()
@click.argument("chat_id")
def branches(chat_id: str):
    """Print the branch forest of a chat."""
    store = get_store()
    all_branches = asyncio.run(store.list_branches(chat_id))
    if not all_branches:
        raise click.ClickException(f"No branches for chat {chat_id}")

    children: dict[str | None, list] = {}
    for b in all_branches:
        children.setdefault(b.parent_branch_id, []).append(b)

    def show(parent_id, depth):
        for b in children.get(parent_id, []):
            label = b.name or b.id
            fork = f"  (from message {b.forked_from_message_id})" if b.is_fork else ""
            click.echo(f"{'  ' * depth}- {b.id}  {label}{fork}")
            show(b.id, depth + 1)

    show(None, 0)


@main.command()
@click.argument("branch_id")
@click.option("--format", "fmt", type=click.Choice(["md", "json"]), default="md", help="Output format.")
def export(branch_id: str, fmt: str):
    """Write one branch to stdout as Markdown or JSON."""
    store = get_store()

    async def load():
        branch = await store.get_branch(branch_id)
        if branch is None:
            return None, None, []
        return await store.get_chat(branch.chat_id), branch, await store.list_messages(branch_id)

    chat, branch, messages = asyncio.run(load())
    if branch is None or chat is None:
        raise click.ClickException(f"Unknown branch: {branch_id}")
    if fmt == "json":
        click.echo(branch_to_json(chat, branch, messages))
    else:
        click.echo(branch_to_markdown(chat, branch, messages))
