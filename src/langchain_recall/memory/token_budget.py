"""
Token counting and budget-aware truncation of message histories.

Counts use tiktoken's cl100k_base encoding, which is close enough to the
tokenizers of the chat models this engine targets.
"""

import json
import logging
import math
import threading
from dataclasses import dataclass
from typing import Optional

import tiktoken
from langchain_core.messages import BaseMessage, SystemMessage

from .config import MemoryConfig

logger = logging.getLogger(__name__)

ENCODING_NAME = "cl100k_base"

# Structural tokens charged per message (role, separators)
MESSAGE_OVERHEAD = 4

_encoder = None
_encoder_failed = False
_encoder_lock = threading.Lock()


def _get_encoder():
    global _encoder, _encoder_failed
    if _encoder is not None or _encoder_failed:
        return _encoder
    with _encoder_lock:
        if _encoder is None and not _encoder_failed:
            try:
                _encoder = tiktoken.get_encoding(ENCODING_NAME)
            except Exception as e:
                # The BPE file is fetched on first use; offline hosts keep the estimate
                logger.warning("Failed to load %s encoding, estimating tokens: %s", ENCODING_NAME, e)
                _encoder_failed = True
    return _encoder


def count_tokens(text: str) -> int:
    """Count tokens in a string."""
    if not text:
        return 0
    encoder = _get_encoder()
    if encoder is None:
        return math.ceil(len(text) / 3.5)
    return len(encoder.encode(text, disallowed_special=()))


def _content_text(msg) -> str:
    content = getattr(msg, "content", "")
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, default=str)


def count_message_tokens(msg) -> int:
    """Tokens for one message, including the per-message overhead."""
    return count_tokens(_content_text(msg)) + MESSAGE_OVERHEAD


def count_messages_tokens(messages: list) -> int:
    return sum(count_message_tokens(m) for m in messages)


def max_input_budget(model_name: str, config: Optional[MemoryConfig] = None) -> int:
    """Context window of the model minus the reserved response buffer."""
    config = config or MemoryConfig()
    return max(config.get_context_window(model_name) - config.response_buffer, 0)


def _fill_newest_first(indexed: list[tuple[int, BaseMessage]], budget: int) -> list[int]:
    """Walk newest-first, keeping messages until the next one does not fit."""
    kept = []
    total = 0
    for index, msg in reversed(indexed):
        tokens = count_message_tokens(msg)
        if total + tokens > budget:
            break
        kept.append(index)
        total += tokens
    return kept


def smart_truncate(messages: list, budget: int, keep_recent: int = 4) -> list:
    """
    Truncate a history to fit a token budget.

    - System messages are always kept. If they alone exceed the budget,
      the oldest system messages are dropped first and nothing else is kept.
    - The last `keep_recent` non-system messages are guaranteed; if even they
      overflow, the oldest of them are dropped.
    - Remaining budget is filled with older messages, newest first.

    Output keeps the input's chronological order.
    """
    if not messages:
        return []

    system = []
    regular = []
    for index, msg in enumerate(messages):
        if isinstance(msg, SystemMessage):
            system.append((index, msg))
        else:
            regular.append((index, msg))

    system_tokens = sum(count_message_tokens(m) for _, m in system)
    if system_tokens >= budget:
        if system_tokens > budget:
            logger.warning(
                "System messages (%d tokens) exceed budget (%d), truncating oldest first",
                system_tokens, budget,
            )
        kept = _fill_newest_first(system, budget)
        return [messages[i] for i in sorted(kept)]

    kept = [i for i, _ in system]
    recent = regular[-keep_recent:] if keep_recent > 0 else []
    older = regular[: len(regular) - len(recent)]
    recent_tokens = sum(count_message_tokens(m) for _, m in recent)

    if system_tokens + recent_tokens > budget:
        kept.extend(_fill_newest_first(recent, budget - system_tokens))
        return [messages[i] for i in sorted(kept)]

    kept.extend(i for i, _ in recent)
    remaining = budget - system_tokens - recent_tokens
    if older and remaining > 0:
        kept.extend(_fill_newest_first(older, remaining))

    return [messages[i] for i in sorted(kept)]


@dataclass
class TokenStats:
    """Token usage of a prompt, for debug logging."""

    total_tokens: int
    max_tokens: int
    remaining: int
    usage_percentage: float
    message_count: int
    average_tokens_per_message: float


def token_stats(
    messages: list,
    model_name: str,
    config: Optional[MemoryConfig] = None,
) -> TokenStats:
    total = count_messages_tokens(messages)
    maximum = max_input_budget(model_name, config)
    return TokenStats(
        total_tokens=total,
        max_tokens=maximum,
        remaining=maximum - total,
        usage_percentage=round(total / maximum * 100, 2) if maximum else 0.0,
        message_count=len(messages),
        average_tokens_per_message=round(total / len(messages), 2) if messages else 0.0,
    )
