"""
Token counting port and helpers.

A token counter is any callable accepting a chat message payload (or a list of payloads) and an
optional ``full`` flag, returning an integer or an awaitable integer. Counters are never trusted:
every call goes through :func:`try_count_tokens`, which degrades failures to a logged warning.
"""

from __future__ import annotations

import inspect
import json
import logging
import math
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Union

logger = logging.getLogger(__name__)

TokenPayload = Union[Dict[str, Any], Sequence[Dict[str, Any]]]
TokenCounter = Callable[..., Union[int, Awaitable[int]]]

_MESSAGE_OVERHEAD_TOKENS = 3
_NAME_OVERHEAD_TOKENS = 1
_REPLY_PRIMING_TOKENS = 3


async def try_count_tokens(
    counter: Optional[TokenCounter],
    payload: TokenPayload,
    *,
    full: bool = False,
    label: str = "message",
) -> Optional[int]:
    """
    Count tokens with an injected counter, awaiting it when it is asynchronous.

    :param counter: Token counter callable, or None.
    :type counter: TokenCounter or None
    :param payload: Message payload or list of payloads.
    :type payload: dict[str, Any] or Sequence[dict[str, Any]]
    :param full: Whether per-request padding tokens are included.
    :type full: bool
    :param label: Short description used in the warning when counting fails.
    :type label: str
    :return: Token count, or None when no counter is available or counting failed.
    :rtype: int or None
    """
    if counter is None:
        return None
    try:
        result = counter(payload, True) if full else counter(payload)
        if inspect.isawaitable(result):
            result = await result
        return int(result)
    except Exception as exc:
        logger.warning("Token counting failed for %s: %s", label, exc)
        return None


def _payload_text(message: Dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        text = content
    elif content is None:
        text = ""
    else:
        text = json.dumps(content, ensure_ascii=False)
    tool_calls = message.get("tool_calls")
    if tool_calls:
        text += tool_calls if isinstance(tool_calls, str) else json.dumps(tool_calls)
    return text


def _is_hangul(character: str) -> bool:
    code = ord(character)
    return 0xAC00 <= code <= 0xD7A3 or 0x3131 <= code <= 0x318E


def estimate_text_tokens(text: str) -> int:
    """
    Estimate the token count of a text without a tokenizer.

    Hangul syllables are priced at 2.5 tokens each and every other character at a quarter token.

    :param text: Text to estimate.
    :type text: str
    :return: Estimated token count.
    :rtype: int
    """
    hangul = sum(1 for character in text if _is_hangul(character))
    other = len(text) - hangul
    return math.ceil(hangul * 2.5) + math.ceil(other / 4)


def estimate_tokens(payload: TokenPayload, full: bool = False) -> int:
    """
    Heuristic token counter usable as a :data:`TokenCounter`.

    :param payload: Message payload or list of payloads.
    :type payload: dict[str, Any] or Sequence[dict[str, Any]]
    :param full: Whether reply priming tokens are included.
    :type full: bool
    :return: Estimated token count.
    :rtype: int
    """
    messages = [payload] if isinstance(payload, dict) else list(payload)
    total = 0
    for message in messages:
        total += estimate_text_tokens(_payload_text(message))
        if message.get("name"):
            total += estimate_text_tokens(str(message["name"]))
    if full:
        total += _REPLY_PRIMING_TOKENS
    return total


def _require_tiktoken():
    try:
        import tiktoken
    except ImportError as import_error:
        raise ValueError(
            "Tiktoken token counting requires an optional dependency. "
            'Install it with pip install "parley[tiktoken]".'
        ) from import_error
    return tiktoken


class TiktokenCounter:
    """
    Token counter backed by a tiktoken encoding.

    Prices each message at three tokens of framing, plus its encoded content, plus one token when a
    name is attached.

    :param encoding: Tiktoken encoding name.
    :type encoding: str
    """

    def __init__(self, encoding: str = "cl100k_base") -> None:
        tiktoken = _require_tiktoken()
        self.encoding_name = encoding
        self._encoding = tiktoken.get_encoding(encoding)

    def __call__(self, payload: TokenPayload, full: bool = False) -> int:
        messages = [payload] if isinstance(payload, dict) else list(payload)
        total = 0
        for message in messages:
            total += _MESSAGE_OVERHEAD_TOKENS
            total += len(self._encoding.encode(_payload_text(message)))
            name = message.get("name")
            if name:
                total += len(self._encoding.encode(str(name))) + _NAME_OVERHEAD_TOKENS
        if full:
            total += _REPLY_PRIMING_TOKENS
        return total


class TokenHandler:
    """
    Token-count snapshot shared between the prompt manager and its callers.

    :param counter: Optional token counter; :func:`estimate_tokens` is used when omitted.
    :type counter: TokenCounter or None
    """

    DEFAULT_CATEGORIES = (
        "start_chat",
        "prompt",
        "bias",
        "nudge",
        "jailbreak",
        "impersonate",
        "examples",
        "conversation",
    )

    def __init__(self, counter: Optional[TokenCounter] = None) -> None:
        self.counter = counter
        self.counts: Dict[str, int] = {category: 0 for category in self.DEFAULT_CATEGORIES}

    async def count_async(self, payload: TokenPayload, full: bool = False) -> int:
        """
        Count tokens with the configured counter, falling back to the heuristic estimate.

        :param payload: Message payload or list of payloads.
        :type payload: dict[str, Any] or Sequence[dict[str, Any]]
        :param full: Whether per-request padding tokens are included.
        :type full: bool
        :return: Token count.
        :rtype: int
        """
        counted = await try_count_tokens(self.counter, payload, full=full, label="token handler")
        if counted is None:
            return estimate_tokens(payload, full)
        return counted

    def get_counts(self) -> Dict[str, int]:
        return self.counts

    def set_counts(self, counts: Dict[str, int]) -> None:
        self.counts = counts

    def reset_counts(self) -> None:
        for key in self.counts:
            self.counts[key] = 0

    def count(self, value: int, category: str) -> None:
        if category in self.counts:
            self.counts[category] += value

    def uncount(self, value: int, category: str) -> None:
        if category in self.counts:
            self.counts[category] = max(0, self.counts[category] - value)

    def get_total(self) -> int:
        return sum(self.counts.values())
