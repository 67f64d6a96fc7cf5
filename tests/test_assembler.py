"""
Budget assembler tests.
"""

from __future__ import annotations

import logging

import pytest

from parley.assembler import BudgetAssembler
from parley.errors import IdentifierNotFoundError, PromptAssemblyError, TokenBudgetExceededError
from parley.messages import Message, MessageGroup


def _message(role: str, content: str, identifier: str, tokens: int) -> Message:
    return Message(role=role, content=content, identifier=identifier, tokens=tokens)


def _assembler(budget: int = 100) -> BudgetAssembler:
    assembler = BudgetAssembler()
    assembler.set_token_budget(budget, 0)
    return assembler


def _identifiers(assembler: BudgetAssembler):
    return [item.identifier for item in assembler.get_messages().get_collection()]


def test_set_token_budget_subtracts_response():
    """
    The budget is the context minus the response reservation.
    """
    assembler = BudgetAssembler()
    assembler.set_token_budget(4095, 300)
    assert assembler.token_budget == 3795


def test_budget_rejection_leaves_state_unchanged():
    """
    A message that does not fit is rejected without consuming budget.
    """
    assembler = _assembler(100)
    assembler.add(MessageGroup("chat"))
    assembler.insert(_message("system", "intro", "intro", 30), "chat")
    assert assembler.token_budget == 70

    with pytest.raises(TokenBudgetExceededError) as error:
        assembler.insert(_message("user", "hello", "hello", 80), "chat")

    assert error.value.identifier == "hello"
    assert str(error.value) == "Token budget exceeded for: hello"
    assert isinstance(error.value, PromptAssemblyError)
    assert assembler.token_budget == 70
    assert [message.identifier for message in assembler.get_messages().flatten()] == ["intro"]


def test_add_rejects_groups_over_budget():
    """
    Adding an unaffordable group raises before touching the tree.
    """
    assembler = _assembler(10)
    with pytest.raises(TokenBudgetExceededError):
        assembler.add(MessageGroup("main", _message("system", "x", "main", 11)))
    assert assembler.token_budget == 10
    assert _identifiers(assembler) == []
    with pytest.raises(TypeError):
        assembler.add(_message("system", "x", "main", 1))


def test_add_positional_policy():
    """
    Append, overwrite, insert-before and fill rules for positional adds.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("a"))
    assembler.add(MessageGroup("b"), -1)
    assert _identifiers(assembler) == ["a", "b"]

    assembler.add(MessageGroup("c"), 1)
    assert _identifiers(assembler) == ["a", "c", "b"]

    replacement = MessageGroup("c", _message("system", "new", "c", 5))
    assembler.add(replacement, 1)
    assert _identifiers(assembler) == ["a", "c", "b"]
    assert assembler.get_messages().get_collection()[1] is replacement
    assert assembler.token_budget == 95

    assembler.add(MessageGroup("far"), 99)
    assert _identifiers(assembler)[-1] == "far"

    assembler.get_messages().items[0] = None
    assembler.add(MessageGroup("filled"), 0)
    assert _identifiers(assembler)[0] == "filled"


def test_add_with_odd_negative_position_appends_with_warning(caplog):
    """
    Negative positions other than -1 append and warn.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("a"))
    with caplog.at_level(logging.WARNING, logger="parley.assembler"):
        assembler.add(MessageGroup("b"), -5)
    assert _identifiers(assembler) == ["a", "b"]
    assert "Invalid position" in caplog.text


def test_add_returns_assembler_for_chaining():
    """
    Adds can be chained.
    """
    assembler = _assembler()
    assert assembler.add(MessageGroup("a")).add(MessageGroup("b")) is assembler


def test_insert_positions():
    """
    Insert at the start, the end, or an explicit index.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("chat"))
    assembler.insert(_message("user", "2", "two", 1), "chat")
    assembler.insert_at_start(_message("user", "1", "one", 1), "chat")
    assembler.insert_at_end(_message("user", "4", "four", 1), "chat")
    assembler.insert(_message("user", "3", "three", 1), "chat", 2)
    assert [message.content for message in assembler.get_messages().flatten()] == [
        "1",
        "2",
        "3",
        "4",
    ]
    assert assembler.token_budget == 96
    assert assembler.get_total_token_count() == 4


def test_insert_into_missing_identifier_raises():
    """
    Inserting into an unknown collection raises and consumes nothing.
    """
    assembler = _assembler()
    with pytest.raises(IdentifierNotFoundError) as error:
        assembler.insert(_message("user", "hi", "hi", 5), "chatHistory")
    assert str(error.value) == "Identifier not found: chatHistory"
    assert assembler.token_budget == 100


def test_insert_validates_message():
    """
    Inserts require a message with an identifier.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("chat"))
    with pytest.raises(TypeError):
        assembler.insert(MessageGroup("nested"), "chat")
    with pytest.raises(ValueError):
        assembler.insert(_message("user", "hi", "", 1), "chat")


def test_insert_skips_messages_without_payload(caplog):
    """
    Empty messages are skipped with a warning and cost nothing.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("chat"))
    with caplog.at_level(logging.WARNING, logger="parley.assembler"):
        assembler.insert(_message("user", "", "empty", 0), "chat")
    assert len(assembler.get_messages().get_item_by_identifier("chat")) == 0
    assert "empty" in caplog.text


def test_remove_last_restores_budget():
    """
    Inserting then removing restores the tree and the budget.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("chat"))
    assembler.insert(_message("user", "hi", "hi", 12), "chat")
    assembler.remove_last_from("chat")
    assert assembler.token_budget == 100
    assert len(assembler.get_messages().get_item_by_identifier("chat")) == 0
    assembler.remove_last_from("chat")
    assert assembler.token_budget == 100
    with pytest.raises(IdentifierNotFoundError):
        assembler.remove_last_from("missing")


def test_reserve_and_free_budget():
    """
    Reservations accept nodes or raw counts and can be released.
    """
    assembler = _assembler()
    group = MessageGroup("controlPrompts", _message("system", "x", "x", 20))
    assembler.reserve_budget(group)
    assembler.reserve_budget(3)
    assert assembler.token_budget == 77
    assert assembler.can_afford(_message("user", "y", "y", 77))
    assert not assembler.can_afford(_message("user", "y", "y", 78))
    assert not assembler.can_afford_all(
        [_message("user", "y", "y", 40), _message("user", "z", "z", 40)]
    )
    assembler.free_budget(group)
    assert assembler.token_budget == 97


def test_find_message_index_and_overrides():
    """
    Root children are found by identifier; overridden prompts round trip.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("a")).add(MessageGroup("b"))
    assert assembler.find_message_index("b") == 1
    assert assembler.has("a")
    assert not assembler.has("c")
    with pytest.raises(IdentifierNotFoundError):
        assembler.find_message_index("c")
    assert assembler.get_overridden_prompts() == []
    assembler.set_overridden_prompts(["main"])
    assert assembler.get_overridden_prompts() == ["main"]


def test_logging_level_follows_toggle(caplog):
    """
    Budget steps are logged at info only when logging is enabled.
    """
    assembler = BudgetAssembler()
    with caplog.at_level(logging.INFO, logger="parley.assembler"):
        assembler.set_token_budget(10, 0)
        assert "token budget" not in caplog.text
        assembler.enable_logging()
        assembler.set_token_budget(20, 5)
    assert "token budget: 15" in caplog.text
    assembler.disable_logging()
    assert not assembler.logging_enabled


def test_get_chat_renders_tree():
    """
    The assembled tree renders depth first.
    """
    assembler = _assembler()
    assembler.add(MessageGroup("main", _message("system", "Be nice", "main", 2)))
    assembler.add(MessageGroup("chatHistory"))
    assembler.insert(_message("user", "hi", "chatHistory-1", 1), "chatHistory")
    assert assembler.get_chat() == [
        {"role": "system", "content": "Be nice"},
        {"role": "user", "content": "hi"},
    ]
