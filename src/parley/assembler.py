"""
Budget-enforcing assembly of the message tree.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence, Union

from .constants import ROOT_IDENTIFIER
from .errors import IdentifierNotFoundError, TokenBudgetExceededError
from .messages import GROUP_KIND, MESSAGE_KIND, Message, MessageGroup, Node, node_tokens
from .messages import squash_system_messages as squash_group
from .tokens import TokenCounter

logger = logging.getLogger(__name__)

InsertPosition = Union[str, int]


class BudgetAssembler:
    """
    Owns the root message group and the remaining token budget.

    Every insertion passes through the assembler so that the budget can never go negative. Budget
    and lookup checks run before any mutation: a rejected operation leaves the tree and the budget
    untouched.

    One assembler is built per prompt preparation and discarded once its chat has been read.
    """

    def __init__(self) -> None:
        self.token_budget = 0
        self.messages = MessageGroup(ROOT_IDENTIFIER)
        self.overridden_prompts: List[str] = []
        self.logging_enabled = False

    def _log(self, message: str, *args: Any) -> None:
        if self.logging_enabled:
            logger.info(message, *args)
        else:
            logger.debug(message, *args)

    def enable_logging(self) -> None:
        self.logging_enabled = True

    def disable_logging(self) -> None:
        self.logging_enabled = False

    def get_messages(self) -> MessageGroup:
        return self.messages

    def set_token_budget(self, context: int, response: int) -> None:
        """
        Set the budget to the context window minus the response reservation.

        :param context: Context window size in tokens.
        :type context: int
        :param response: Tokens reserved for the response.
        :type response: int
        :return: None.
        :rtype: None
        """
        self.token_budget = context - response
        self._log(
            "Prompt tokens: %s, completion tokens: %s, token budget: %s",
            context,
            response,
            self.token_budget,
        )

    def add(self, group: MessageGroup, position: Optional[int] = None) -> "BudgetAssembler":
        """
        Add a group as a direct child of the root.

        ``None`` and ``-1`` append. Other negative positions append with a warning, and positions
        past the end append. At a valid position, a child with the same identifier is overwritten,
        a child with a different identifier is pushed one slot later, and an empty slot is filled.

        :param group: Group to add.
        :type group: MessageGroup
        :param position: Optional target index.
        :type position: int or None
        :return: The assembler, for chaining.
        :rtype: BudgetAssembler
        :raises TypeError: If ``group`` is not a message group.
        :raises TokenBudgetExceededError: If the group does not fit in the remaining budget.
        """
        if getattr(group, "kind", None) != GROUP_KIND:
            raise TypeError("Argument must be an instance of MessageGroup")
        self.check_token_budget(group, group.identifier)

        collection = self.messages.items
        if position is None or position == -1:
            collection.append(group)
        elif position < 0:
            logger.warning("Invalid position %s for %s, appending", position, group.identifier)
            collection.append(group)
        elif position >= len(collection):
            collection.append(group)
        else:
            existing = collection[position]
            if existing is None:
                collection[position] = group
            elif existing.identifier == group.identifier:
                collection[position] = group
            else:
                logger.debug(
                    "Position %s is held by %s, inserting %s before it",
                    position,
                    existing.identifier,
                    group.identifier,
                )
                collection.insert(position, group)

        self.decrease_token_budget_by(group.get_tokens())
        self._log("Added %s. Remaining tokens: %s", group.identifier, self.token_budget)
        return self

    def insert_at_start(self, message: Message, identifier: str) -> None:
        self.insert(message, identifier, "start")

    def insert_at_end(self, message: Message, identifier: str) -> None:
        self.insert(message, identifier, "end")

    def insert(self, message: Message, identifier: str, position: InsertPosition = "end") -> None:
        """
        Insert a message into a named sub-collection of the root.

        Messages without content or tool calls are skipped with a warning and consume nothing.

        :param message: Message to insert.
        :type message: Message
        :param identifier: Identifier of the target sub-collection.
        :type identifier: str
        :param position: ``"start"``, ``"end"``, or an index within the sub-collection.
        :type position: str or int
        :return: None.
        :rtype: None
        :raises TypeError: If ``message`` is not a message.
        :raises ValueError: If the message has no identifier.
        :raises IdentifierNotFoundError: If the sub-collection does not exist.
        :raises TokenBudgetExceededError: If the message does not fit in the remaining budget.
        """
        if getattr(message, "kind", None) != MESSAGE_KIND:
            raise TypeError("Argument must be an instance of Message")
        if not message.identifier:
            raise ValueError("Message must have an identifier")

        target = self.messages.items[self.find_message_index(identifier)]
        if target.kind != GROUP_KIND:
            raise IdentifierNotFoundError(identifier)
        self.check_token_budget(message, message.identifier)

        if not message.has_payload():
            logger.warning("Skipping %s: no content or tool calls", message.identifier)
            return

        if position == "start":
            target.items.insert(0, message)
        elif position == "end":
            target.items.append(message)
        elif isinstance(position, int):
            target.items.insert(position, message)
        else:
            raise ValueError(f"Unknown insert position: {position!r}")

        self.decrease_token_budget_by(message.get_tokens())
        self._log(
            "Inserted %s into %s. Remaining tokens: %s",
            message.identifier,
            identifier,
            self.token_budget,
        )

    def remove_last_from(self, identifier: str) -> None:
        """
        Remove the last item of a sub-collection and refund its tokens.

        :param identifier: Identifier of the sub-collection.
        :type identifier: str
        :return: None.
        :rtype: None
        :raises IdentifierNotFoundError: If the sub-collection does not exist.
        """
        target = self.messages.items[self.find_message_index(identifier)]
        if target.kind != GROUP_KIND or not target.items:
            logger.debug("No message to remove from %s", identifier)
            return
        removed = target.items.pop()
        self.increase_token_budget_by(node_tokens(removed))
        self._log(
            "Removed %s from %s. Remaining tokens: %s",
            getattr(removed, "identifier", None),
            identifier,
            self.token_budget,
        )

    def can_afford(self, item: Node) -> bool:
        return self.token_budget - node_tokens(item) >= 0

    def can_afford_all(self, items: Sequence[Node]) -> bool:
        return self.token_budget - sum(node_tokens(item) for item in items) >= 0

    def check_token_budget(self, item: Node, identifier: str) -> None:
        if not self.can_afford(item):
            raise TokenBudgetExceededError(identifier)

    def has(self, identifier: str) -> bool:
        return self.messages.has_item_with_identifier(identifier)

    def get_total_token_count(self) -> int:
        return self.messages.get_tokens()

    def get_chat(self) -> List[dict[str, Any]]:
        return self.messages.get_chat()

    def reserve_budget(self, item: Union[Node, int]) -> None:
        """
        Set tokens aside without placing anything in the tree.

        :param item: Node whose tokens to reserve, or a raw token count.
        :type item: Message or MessageGroup or int
        :return: None.
        :rtype: None
        """
        tokens = item if isinstance(item, int) else node_tokens(item)
        self.decrease_token_budget_by(tokens)

    def free_budget(self, item: Union[Node, int]) -> None:
        tokens = item if isinstance(item, int) else node_tokens(item)
        self.increase_token_budget_by(tokens)

    def increase_token_budget_by(self, tokens: int) -> None:
        self.token_budget += tokens

    def decrease_token_budget_by(self, tokens: int) -> None:
        self.token_budget -= tokens

    def find_message_index(self, identifier: str) -> int:
        """
        Locate a direct child of the root.

        :param identifier: Identifier to find.
        :type identifier: str
        :return: Index of the child.
        :rtype: int
        :raises IdentifierNotFoundError: If no child has the identifier.
        """
        for index, item in enumerate(self.messages.items):
            if item is not None and item.identifier == identifier:
                return index
        raise IdentifierNotFoundError(identifier)

    def set_overridden_prompts(self, identifiers: List[str]) -> None:
        self.overridden_prompts = identifiers

    def get_overridden_prompts(self) -> List[str]:
        return self.overridden_prompts or []

    async def squash_system_messages(
        self, token_counter: Optional[TokenCounter] = None
    ) -> MessageGroup:
        """
        Replace the tree with its flattened, squashed form.

        The previous root group is left intact, so callers holding it can still inspect the
        pre-squash state.

        :param token_counter: Optional token counter used to re-price merged messages.
        :type token_counter: TokenCounter or None
        :return: The new root group.
        :rtype: MessageGroup
        """
        self.messages = await squash_group(self.messages, token_counter)
        return self.messages
