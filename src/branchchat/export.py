"""Export a branch to Markdown and JSON formats."""

import json

from .core import Branch, Chat, Message, content_to_wire, image_refs, plain_text


def branch_to_markdown(chat: Chat, branch: Branch, messages: list[Message]) -> str:
    """Export one timeline of a chat as clean Markdown."""
    lines = [f"# {chat.title or 'Untitled chat'}", ""]

    lines.append(f"**Branch:** {branch.name or branch.id}")
    if branch.is_fork:
        lines.append(f"**Forked from:** message {branch.forked_from_message_id} of branch {branch.parent_branch_id}")
    lines.append(f"**Created:** {branch.created_at.isoformat()}")
    if chat.system_prompt:
        lines.append(f"**System prompt:** {chat.system_prompt}")
    lines.append(f"**Messages:** {len(messages)}")
    lines.extend(["", "---", ""])

    for msg in messages:
        if msg.type == "break":
            lines.extend(["*Context cleared*", "", "---", ""])
            continue
        role_label = msg.role.capitalize()
        if msg.type == "error":
            role_label = f"{role_label} (error: {msg.error_type or 'unknown'})"
        ts = f" ({msg.created_at.strftime('%Y-%m-%d %H:%M')})" if msg.created_at else ""
        lines.append(f"## {role_label}{ts}")
        lines.append("")
        if msg.reasoning:
            lines.append("> " + msg.reasoning.replace("\n", "\n> "))
            lines.append("")
        lines.append(plain_text(msg.content))
        for ref in image_refs(msg.content):
            lines.append(f"![image]({ref})")
        lines.extend(["", "---", ""])

    return "\n".join(lines)


def branch_to_json(chat: Chat, branch: Branch, messages: list[Message]) -> str:
    """Export one timeline of a chat as structured JSON."""
    data = {
        "chat": {
            "id": chat.id,
            "title": chat.title,
            "system_prompt": chat.system_prompt,
            "history_type": chat.history_type,
            "history_count": chat.history_count,
        },
        "branch": branch_to_dict(branch),
        "messages": [message_to_dict(msg) for msg in messages],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def branch_to_dict(branch: Branch) -> dict:
    """Convert a Branch dataclass to a JSON-serializable dict."""
    return {
        "id": branch.id,
        "chat_id": branch.chat_id,
        "name": branch.name,
        "created_at": branch.created_at.isoformat(),
        "forked_from_message_id": branch.forked_from_message_id,
        "parent_branch_id": branch.parent_branch_id,
    }


def message_to_dict(msg: Message) -> dict:
    """Convert a Message dataclass to a JSON-serializable dict."""
    return {
        "id": msg.id,
        "branch_id": msg.branch_id,
        "role": msg.role,
        "type": msg.type,
        "content": content_to_wire(msg.content),
        "reasoning": msg.reasoning,
        "input_tokens": msg.input_tokens,
        "output_tokens": msg.output_tokens,
        "total_tokens": msg.total_tokens,
        "search_enabled": msg.search_enabled,
        "search_status": msg.search_status,
        "search_result": msg.search_result,
        "provider_id": msg.provider_id,
        "model": msg.model,
        "error_type": msg.error_type,
        "error_message": msg.error_message,
        "tool_calls": msg.tool_calls,
        "created_at": msg.created_at.isoformat() if msg.created_at else None,
    }
