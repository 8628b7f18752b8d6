"""Build the exact message sequence replayed to the model for a turn."""

from typing import Optional

from .core import Content, HistoryPolicy, Message, RequestMessage

REPLAY_TYPES = ("text", "image")
REPLAY_ROLES = ("user", "assistant")


def build_context_window(
    messages: list[Message],
    policy: HistoryPolicy,
    pending_content: Optional[Content] = None,
) -> list[RequestMessage]:
    """Turn a branch's messages plus chat policy into an ordered request.

    Steps, in order:

    1. Drop everything up to and including the last ``break`` message.
    2. Keep only text/image messages from the user or the assistant.
    3. Append ``pending_content`` as a user entry, if given.
    4. Apply the history policy: ``all`` keeps everything, ``none`` keeps
       only the pending entry, ``count`` keeps the last ``history_count``
       entries (a count of zero or less behaves like ``none``).
    5. Prepend the system prompt, whatever the policy.

    The function reads no clock and has no side effects, so identical
    inputs always produce identical output.
    """
    if policy.history_type not in ("all", "none", "count"):
        raise ValueError(f"Unknown history type: {policy.history_type!r}")

    start = 0
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].type == "break":
            start = i + 1
            break

    window = [
        RequestMessage(role=m.role, content=m.content)
        for m in messages[start:]
        if m.type in REPLAY_TYPES and m.role in REPLAY_ROLES
    ]

    pending = None
    if pending_content is not None:
        pending = RequestMessage(role="user", content=pending_content)
        window.append(pending)

    if policy.history_type == "none" or (
        policy.history_type == "count" and policy.history_count <= 0
    ):
        window = [pending] if pending is not None else []
    elif policy.history_type == "count":
        window = window[-policy.history_count:]

    if policy.system_prompt:
        window.insert(0, RequestMessage(role="system", content=policy.system_prompt))
    return window
