"""
Token-priced messages and the nestable groups that hold them.

Nodes form a tagged union distinguished by their ``kind`` attribute (``"message"`` or
``"group"``); tree walks dispatch on that tag.
"""

from __future__ import annotations

import copy
import dataclasses
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Iterable, Iterator, List, Optional, Union

from .constants import SQUASH_EXCLUDED_IDENTIFIERS, TOKENS_PER_IMAGE, TOKENS_PER_VIDEO
from .tokens import TokenCounter, try_count_tokens

logger = logging.getLogger(__name__)

MESSAGE_KIND = "message"
GROUP_KIND = "group"

ImageCostFunction = Callable[[str], Union[int, Awaitable[int]]]


@dataclass
class Message:
    """
    Atomic, token-priced unit of conversation content.

    ``tokens`` is a cached price; it is only refreshed by the setters below, never on read.

    :ivar role: Message role (system, user, assistant, or tool).
    :vartype role: str
    :ivar content: Message text.
    :vartype content: str or None
    :ivar identifier: Slot identifier.
    :vartype identifier: str
    :ivar name: Optional speaker name.
    :vartype name: str or None
    :ivar tool_calls: Optional provider-format tool calls.
    :vartype tool_calls: list[dict[str, Any]] or None
    :ivar tokens: Cached token price.
    :vartype tokens: int
    """

    kind: ClassVar[str] = MESSAGE_KIND

    role: str
    content: Optional[str]
    identifier: str
    name: Optional[str] = None
    tool_calls: Optional[List[dict[str, Any]]] = None
    tokens: int = 0

    def __post_init__(self) -> None:
        if not self.role:
            self.role = "system"

    @classmethod
    async def create(
        cls,
        role: str,
        content: Optional[str],
        identifier: str,
        token_counter: Optional[TokenCounter] = None,
    ) -> "Message":
        """
        Create a message and price its content.

        :param role: Message role.
        :type role: str
        :param content: Message text.
        :type content: str or None
        :param identifier: Slot identifier.
        :type identifier: str
        :param token_counter: Optional token counter.
        :type token_counter: TokenCounter or None
        :return: Priced message; zero tokens when counting is unavailable or fails.
        :rtype: Message
        """
        message = cls(role=role, content=content, identifier=identifier)
        if isinstance(message.content, str) and message.content:
            counted = await try_count_tokens(
                token_counter,
                {"role": message.role, "content": message.content},
                label=identifier,
            )
            message.tokens = counted or 0
        return message

    @classmethod
    async def from_prompt(cls, prompt: Any, token_counter: Optional[TokenCounter] = None) -> "Message":
        """
        Create a message from a prompt definition.

        :param prompt: Prompt with ``role``, ``content`` and ``identifier`` attributes.
        :type prompt: parley.registry.Prompt
        :param token_counter: Optional token counter.
        :type token_counter: TokenCounter or None
        :return: Priced message.
        :rtype: Message
        """
        return await cls.create(prompt.role, prompt.content, prompt.identifier, token_counter)

    async def set_tool_calls(
        self, invocations: Iterable[Any], token_counter: Optional[TokenCounter] = None
    ) -> None:
        """
        Attach tool invocations in provider format and re-price the message.

        :param invocations: Invocations with ``id``, ``name`` and ``parameters`` (attributes or keys).
        :type invocations: Iterable[Any]
        :param token_counter: Optional token counter.
        :type token_counter: TokenCounter or None
        :return: None.
        :rtype: None
        """
        self.tool_calls = [
            {
                "id": _field(invocation, "id"),
                "type": "function",
                "function": {
                    "arguments": _field(invocation, "parameters"),
                    "name": _field(invocation, "name"),
                },
            }
            for invocation in invocations
        ]
        counted = await try_count_tokens(
            token_counter,
            {"role": self.role, "tool_calls": json.dumps(self.tool_calls)},
            label=f"{self.identifier} tool calls",
        )
        if counted is not None:
            self.tokens = counted

    async def set_name(self, name: str, token_counter: Optional[TokenCounter] = None) -> None:
        """
        Attach a speaker name and re-price the whole message.

        :param name: Speaker name.
        :type name: str
        :param token_counter: Optional token counter.
        :type token_counter: TokenCounter or None
        :return: None.
        :rtype: None
        """
        self.name = name
        counted = await try_count_tokens(
            token_counter,
            {"role": self.role, "content": self.content, "name": self.name},
            label=f"{self.identifier} name",
        )
        if counted is not None:
            self.tokens = counted

    async def add_image(self, image: str, image_cost: Optional[ImageCostFunction] = None) -> None:
        """
        Account for an attached image.

        :param image: Image URL or data URL.
        :type image: str
        :param image_cost: Optional function pricing the image.
        :type image_cost: callable or None
        :return: None.
        :rtype: None
        """
        if image_cost is None:
            self.tokens += TOKENS_PER_IMAGE
            return
        try:
            cost = image_cost(image)
            if hasattr(cost, "__await__"):
                cost = await cost
            self.tokens += int(cost)
        except Exception as exc:
            logger.warning("Image pricing failed for %s: %s", self.identifier, exc)
            self.tokens += TOKENS_PER_IMAGE

    async def add_video(self, video: str) -> None:
        """
        Account for an attached video at a flat estimate.

        :param video: Video URL or data URL.
        :type video: str
        :return: None.
        :rtype: None
        """
        self.tokens += TOKENS_PER_VIDEO

    def get_tokens(self) -> int:
        return self.tokens

    def has_payload(self) -> bool:
        """
        Report whether the message carries content or tool calls.

        :return: True when the message would be sent.
        :rtype: bool
        """
        return bool(self.content) or bool(self.tool_calls)

    def copy(self) -> "Message":
        return dataclasses.replace(self, tool_calls=copy.deepcopy(self.tool_calls))

    def to_chat(self) -> dict[str, Any]:
        """
        Render the message in wire format.

        :return: Chat message mapping.
        :rtype: dict[str, Any]
        """
        chat: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            chat["name"] = self.name
        if self.tool_calls:
            chat["tool_calls"] = self.tool_calls
        if self.role == "tool":
            chat["tool_call_id"] = self.identifier
        return chat


def _field(invocation: Any, key: str) -> Any:
    if isinstance(invocation, dict):
        return invocation.get(key)
    return getattr(invocation, key, None)


Node = Union[Message, "MessageGroup"]


def is_node(item: object) -> bool:
    return getattr(item, "kind", None) in (MESSAGE_KIND, GROUP_KIND)


def node_tokens(node: Optional[Node]) -> int:
    """
    Sum the token price of a node and everything below it.

    :param node: Message, group, or empty placeholder.
    :type node: Message or MessageGroup or None
    :return: Token total.
    :rtype: int
    """
    if node is None:
        return 0
    if node.kind == GROUP_KIND:
        return sum(node_tokens(child) for child in node.items)
    return node.tokens


def iter_messages(node: Optional[Node]) -> Iterator[Message]:
    """
    Yield the leaf messages below a node, depth first.

    :param node: Message, group, or empty placeholder.
    :type node: Message or MessageGroup or None
    :return: Iterator over messages.
    :rtype: Iterator[Message]
    """
    if node is None:
        return
    if node.kind == GROUP_KIND:
        for child in node.items:
            yield from iter_messages(child)
        return
    yield node


class MessageGroup:
    """
    Named, ordered container of messages and nested groups.

    :param identifier: Group identifier.
    :type identifier: str
    :param items: Initial messages or groups.
    :type items: Message or MessageGroup
    :raises TypeError: If any item is not a message or group.
    """

    kind: ClassVar[str] = GROUP_KIND

    def __init__(self, identifier: str, *items: Node) -> None:
        for item in items:
            _require_node(item)
        self.identifier = identifier
        self.items: List[Optional[Node]] = list(items)

    def __repr__(self) -> str:
        return f"MessageGroup({self.identifier!r}, items={self.items!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MessageGroup):
            return NotImplemented
        return self.identifier == other.identifier and self.items == other.items

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Optional[Node]]:
        return iter(self.items)

    def add(self, item: Node) -> None:
        _require_node(item)
        self.items.append(item)

    def get_collection(self) -> List[Optional[Node]]:
        return self.items

    def get_item_by_identifier(self, identifier: str) -> Optional[Node]:
        return next(
            (item for item in self.items if item is not None and item.identifier == identifier),
            None,
        )

    def has_item_with_identifier(self, identifier: str) -> bool:
        return self.get_item_by_identifier(identifier) is not None

    def get_tokens(self) -> int:
        return node_tokens(self)

    def flatten(self) -> List[Message]:
        """
        Collapse nested groups into a single list of messages.

        :return: Messages in depth-first order.
        :rtype: list[Message]
        """
        return list(iter_messages(self))

    def get_chat(self) -> List[dict[str, Any]]:
        """
        Render the group in wire format.

        Messages without content or tool calls are dropped.

        :return: Chat messages.
        :rtype: list[dict[str, Any]]
        """
        return [message.to_chat() for message in iter_messages(self) if message.has_payload()]


def _require_node(item: object) -> None:
    if not is_node(item):
        raise TypeError("Only Message and MessageGroup instances can be added to MessageGroup")


def _is_squashable(message: Message) -> bool:
    return (
        message.role == "system"
        and not message.name
        and message.identifier not in SQUASH_EXCLUDED_IDENTIFIERS
    )


async def squash_system_messages(
    group: MessageGroup, token_counter: Optional[TokenCounter] = None
) -> MessageGroup:
    """
    Merge consecutive unnamed system messages into one.

    The input group is never modified: the result is a new flat group whose merged messages are
    copies. Empty system messages are dropped before merging. Merged content is joined with a
    newline and re-priced through the counter; without a counter the first message's price is kept.

    :param group: Group to squash.
    :type group: MessageGroup
    :param token_counter: Optional token counter.
    :type token_counter: TokenCounter or None
    :return: New flat group with the same identifier.
    :rtype: MessageGroup
    """
    squashed: List[Message] = []
    last: Optional[Message] = None
    skipped = 0
    for message in group.flatten():
        if message.role == "system" and not message.content:
            skipped += 1
            continue
        if _is_squashable(message) and last is not None and _is_squashable(last):
            # Squashable messages are copied on append, so the input tree stays untouched.
            merged = last
            merged.content = f"{merged.content}\n{message.content}"
            counted = await try_count_tokens(
                token_counter,
                {"role": merged.role, "content": merged.content},
                label=f"{merged.identifier} squash",
            )
            if counted is not None:
                merged.tokens = counted
            continue
        current = message.copy() if _is_squashable(message) else message
        squashed.append(current)
        last = current
    if skipped:
        logger.debug("Dropped %d empty system messages while squashing", skipped)
    result = MessageGroup(group.identifier)
    result.items = list(squashed)
    return result
