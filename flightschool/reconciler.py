"""Merge chat flushes from two unsynchronized writers into one thread transcript.

The chat stream handler (driven by the live browser connection) and the
background chat executor (which survives that connection dropping) both
read-modify-write the same thread document. ``reconcile_flush`` takes the thread
as currently stored plus one flush and returns the thread to write, or ``None``
when the flush must be dropped. It never touches storage.
"""

from __future__ import annotations

import random
import string
import time
from dataclasses import dataclass

from .models import utcnow
from .threads import Message, Thread

PLACEHOLDER_PREFIX = "streaming-"
CURSOR_MARKER = " ▊"
# Replies this short are treated as noise rather than a finalized answer.
MIN_FINALIZED_LENGTH = 10


@dataclass(frozen=True)
class Flush:
    job_id: str
    prompt: str
    content: str
    is_final: bool
    tool_calls: tuple[str, ...] = ()
    has_actionable_item: bool = False


def placeholder_id(job_id: str) -> str:
    return f"{PLACEHOLDER_PREFIX}{job_id}"


def generate_message_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"msg-{int(time.time() * 1000)}-{suffix}"


def find_user_message(messages: tuple[Message, ...] | list[Message], prompt: str) -> int:
    """Index of the most recent user message whose content is exactly ``prompt``, or -1."""
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role == "user" and message.content == prompt:
            return index
    return -1


def is_finalized_reply(message: Message) -> bool:
    return (
        message.role == "assistant"
        and not message.id.startswith(PLACEHOLDER_PREFIX)
        and not message.content.endswith(CURSOR_MARKER)
        and len(message.content) > MIN_FINALIZED_LENGTH
    )


def has_finalized_reply(messages: tuple[Message, ...] | list[Message], user_index: int) -> bool:
    return any(is_finalized_reply(message) for message in messages[user_index + 1 :])


def reconcile_flush(thread: Thread, flush: Flush) -> Thread | None:
    messages = list(thread.messages)

    user_index = find_user_message(messages, flush.prompt)
    if user_index == -1:
        return None
    if has_finalized_reply(messages, user_index):
        return None

    wanted_id = placeholder_id(flush.job_id)
    existing = next((i for i, message in enumerate(messages) if message.id == wanted_id), -1)
    if existing == -1 and not flush.is_final:
        return None

    reply = Message(
        id=generate_message_id() if flush.is_final else wanted_id,
        role="assistant",
        content=flush.content if flush.is_final else flush.content + CURSOR_MARKER,
        tool_calls=flush.tool_calls or None,
        has_actionable_item=flush.has_actionable_item,
    )
    if existing >= 0:
        messages[existing] = reply
    else:
        messages.insert(user_index + 1, reply)

    return thread.with_messages(messages, is_streaming=not flush.is_final, updated_at=utcnow().isoformat())


def insert_placeholder(thread: Thread, prompt: str, job_id: str) -> Thread | None:
    """Insert the empty in-progress reply that later non-final flushes update.

    Only the chat stream handler calls this, at the start of a reply; returns
    ``None`` when there is nothing to do.
    """
    messages = list(thread.messages)
    user_index = find_user_message(messages, prompt)
    if user_index == -1 or has_finalized_reply(messages, user_index):
        return None
    wanted_id = placeholder_id(job_id)
    if any(message.id == wanted_id for message in messages):
        return None

    messages.insert(user_index + 1, Message(id=wanted_id, role="assistant", content=CURSOR_MARKER))
    return thread.with_messages(messages, is_streaming=True, updated_at=utcnow().isoformat())
