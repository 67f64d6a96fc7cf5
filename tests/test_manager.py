"""
Prompt manager tests.
"""

from __future__ import annotations

import asyncio

import pytest

from parley.assembler import BudgetAssembler
from parley.manager import GLOBAL_PROMPT_ORDER_ID, PromptManager, PromptOrder, sanitize_name
from parley.messages import Message, MessageGroup
from parley.registry import Prompt


def _manager(**kwargs) -> PromptManager:
    return PromptManager(user_name="Alice", char_name="Seraphina", **kwargs)


def test_default_collection_follows_global_order():
    """
    Enabled prompts follow the global order; empty non-markers are skipped.
    """
    registry = _manager().get_prompt_collection()
    assert [prompt.identifier for prompt in registry] == [
        "main",
        "worldInfoBefore",
        "charDescription",
        "charPersonality",
        "scenario",
        "worldInfoAfter",
        "dialogueExamples",
        "chatHistory",
    ]
    assert registry.get("main").content == (
        "Write Seraphina's next reply in a fictional chat between Seraphina and Alice."
    )


def test_collection_does_not_modify_definitions():
    """
    Prepared prompts are copies of the stored definitions.
    """
    manager = _manager()
    registry = manager.get_prompt_collection()
    registry.get("main").content = "changed"
    assert "{{char}}" in manager.get_prompt_by_id("main").content


def test_disabled_main_is_kept_empty():
    """
    A disabled main prompt stays in the collection without content.
    """
    manager = _manager()
    manager.add_prompt_order_for_character(
        GLOBAL_PROMPT_ORDER_ID,
        [{"identifier": "main", "enabled": False}, {"identifier": "chatHistory"}],
    )
    registry = manager.get_prompt_collection()
    assert [prompt.identifier for prompt in registry] == ["main", "chatHistory"]
    assert registry.get("main").content == ""


def test_user_prompts_are_appended_and_ordered():
    """
    User-added prompts missing from the order are appended and remembered.
    """
    manager = _manager()
    manager.add_prompt({"identifier": "style", "role": "user", "content": "Talk to {{user}}."})
    manager.add_prompt(
        {"identifier": "recap", "content": "Recap.", "injection_trigger": ["continue"]}
    )
    registry = manager.get_prompt_collection("normal")
    assert registry.get("style").content == "Talk to Alice."
    assert registry.get("recap") is None
    order = manager.get_prompt_order_for_character(GLOBAL_PROMPT_ORDER_ID)
    assert order[-1].identifier == "style"

    continued = manager.get_prompt_collection("Continue")
    assert continued.get("recap").content == "Recap."


def test_triggers_restrict_ordered_prompts():
    """
    Ordered prompts with triggers only appear for matching generation types.
    """
    manager = _manager()
    manager.add_prompt(
        {
            "identifier": "nsfw",
            "system_prompt": True,
            "content": "Impersonation only.",
            "injection_trigger": ["impersonate"],
        }
    )
    assert manager.get_prompt_collection("normal").get("nsfw") is None
    assert manager.get_prompt_collection("impersonate").get("nsfw") is not None
    assert PromptManager.should_trigger(None, "normal")


def test_prompt_disabled_for_active_character():
    """
    Per-character orders decide disabled prompts.
    """
    manager = _manager(active_character={"id": 5})
    manager.add_prompt_order_for_character(5, [{"identifier": "jailbreak", "enabled": False}])
    assert manager.is_prompt_disabled_for_active_character("jailbreak")
    assert not manager.is_prompt_disabled_for_active_character("main")
    manager.active_character = None
    assert not manager.is_prompt_disabled_for_active_character("jailbreak")
    with pytest.raises(ValueError):
        manager.add_prompt_order_for_character(None, [])


def test_prompt_order_ids_are_strings():
    """
    Numeric character ids are stored as strings.
    """
    order = PromptOrder.model_validate({"character_id": 100001, "order": []})
    assert order.character_id == GLOBAL_PROMPT_ORDER_ID


def test_prepare_prompt_exposes_original_and_outlets():
    """
    Preparation substitutes the original content and outlet macros.
    """
    manager = _manager()
    manager.outlets = {"lore": "Dragons exist."}
    prompt = Prompt(identifier="main", content="{{original}} {{outlet::lore}}")
    prepared = manager.prepare_prompt(prompt, "Base.")
    assert prepared.content == "Base. Dragons exist."
    assert prompt.content == "{{original}} {{outlet::lore}}"


def test_sanitize_name():
    """
    Names lose accents and unsupported characters and are capped at 64 characters.
    """
    assert sanitize_name("José María!") == "Jose_Maria_"
    assert sanitize_name(None) == ""
    assert len(sanitize_name("x" * 100)) == 64
    assert _manager().sanitize_name("Bob") == "Bob"


def test_set_chat_completion_records_token_counts():
    """
    Token counts are recorded per root child.
    """
    manager = _manager()
    assembler = BudgetAssembler()
    assembler.set_token_budget(100, 0)
    assembler.add(MessageGroup("main", Message("system", "x", "main", tokens=7)))
    assembler.add(MessageGroup("chatHistory", Message("user", "y", "chatHistory-1", tokens=3)))
    assembler.set_overridden_prompts(["main"])

    manager.set_chat_completion(assembler)

    counts = manager.token_handler.get_counts()
    assert counts["main"] == 7
    assert counts["chatHistory"] == 3
    assert counts["prompt"] == 0
    assert manager.messages is assembler.get_messages()
    assert manager.overridden_prompts == ["main"]


def test_render_awaits_callback():
    """
    Render calls synchronous and asynchronous hooks.
    """
    calls = []

    async def hook(manager, dry_run):
        calls.append(("async", dry_run))

    asyncio.run(_manager(render_callback=hook).render(False))
    asyncio.run(_manager(render_callback=lambda manager, dry_run: calls.append(("sync", dry_run))).render())
    asyncio.run(_manager().render())
    assert calls == [("async", False), ("sync", True)]
