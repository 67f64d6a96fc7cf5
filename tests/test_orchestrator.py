"""
Prompt orchestrator tests.
"""

from __future__ import annotations

import asyncio

import pytest

from parley.characters import CharacterCard
from parley.errors import TokenBudgetExceededError
from parley.manager import PromptManager
from parley.messages import Message, MessageGroup
from parley.models import (
    ChatMessageInput,
    CleanupPolicy,
    ExampleMessage,
    ExtensionPrompt,
    ExtensionPromptType,
    PromptInputs,
    PromptSettings,
    WorldInfoResult,
)
from parley.orchestrator import (
    PromptOrchestrator,
    apply_names_to_content,
    wrap_user_messages_in_quotes,
)

MAIN = "Write Seraphina's next reply in a fictional chat between Seraphina and Alice."


def _content_counter(payload, full=False):
    return len(payload.get("content") or "")


def _orchestrator(settings=None, renders=None, **kwargs) -> PromptOrchestrator:
    settings = settings or PromptSettings()

    def record(manager, dry_run):
        if renders is not None:
            renders.append(dry_run)

    manager = PromptManager(
        settings,
        user_name="Alice",
        char_name="Seraphina",
        render_callback=record,
        active_character=kwargs.pop("active_character", None),
    )
    return PromptOrchestrator(manager, settings, token_counter=_content_counter, **kwargs)


def _inputs(**fields) -> PromptInputs:
    fields.setdefault("char_description", "Desc")
    fields.setdefault("messages", [ChatMessageInput(role="user", content="Hi")])
    return PromptInputs(**fields)


def test_names_in_content_are_not_doubled():
    """
    Prefixing names into content twice leaves a single prefix.
    """
    chat = [{"role": "user", "name": "Bob", "content": "hi"}]
    once = apply_names_to_content(chat)
    twice = apply_names_to_content(once)
    assert once == [{"role": "user", "name": "Bob", "content": "Bob: hi"}]
    assert twice == once
    assert chat[0]["content"] == "hi"


def test_names_in_content_skip_system_and_unnamed_messages():
    """
    System messages and messages without names are left alone.
    """
    chat = [
        {"role": "system", "name": "example_user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]
    assert apply_names_to_content(chat) == chat


def test_wrap_user_messages_in_quotes():
    """
    Only non-empty user messages are quoted.
    """
    chat = [
        {"role": "user", "content": "hi"},
        {"role": "user", "content": ""},
        {"role": "assistant", "content": "hello"},
    ]
    assert wrap_user_messages_in_quotes(chat) == [
        {"role": "user", "content": '"hi"'},
        {"role": "user", "content": ""},
        {"role": "assistant", "content": "hello"},
    ]


def test_effective_max_context_is_capped_by_model():
    """
    The model ceiling caps the requested context.
    """
    settings = PromptSettings(openai_max_context=200_000, api_provider="openai", model="gpt-4")
    assert _orchestrator(settings).effective_max_context() == 8_000
    unlocked = settings.model_copy(update={"max_context_unlocked": True})
    assert _orchestrator(unlocked).effective_max_context() == 200_000
    assert _orchestrator(PromptSettings(openai_max_context=200_000)).effective_max_context() == (
        200_000
    )


def test_prepare_messages_squashes_and_renders():
    """
    A real generation squashes system messages and renders.
    """
    renders = []
    orchestrator = _orchestrator(renders=renders)

    chat, counts = asyncio.run(orchestrator.prepare_messages(_inputs()))

    assert chat == [
        {"role": "system", "content": f"{MAIN}\nDesc"},
        {"role": "user", "content": "Hi"},
    ]
    assert renders == [False]
    assert counts["main"] == len(MAIN)
    assert counts["chatHistory"] == 2
    assert orchestrator.prompt_manager.messages is not None


def test_dry_run_without_character_returns_nothing():
    """
    Dry runs need an active character.
    """
    assert asyncio.run(_orchestrator().prepare_messages(_inputs(), dry_run=True)) == (None, None)


def test_dry_run_skips_squash_and_render():
    """
    Dry runs count tokens without squashing or rendering.
    """
    renders = []
    orchestrator = _orchestrator(renders=renders, active_character={"id": "1"})

    chat, counts = asyncio.run(orchestrator.prepare_messages(_inputs(), dry_run=True))

    assert [message["content"] for message in chat] == [MAIN, "Desc", "Hi"]
    assert renders == []
    assert counts["charDescription"] == 4


def test_squash_can_be_disabled():
    """
    Squashing follows the settings.
    """
    orchestrator = _orchestrator(PromptSettings(squash_system_messages=False))
    chat, _ = asyncio.run(orchestrator.prepare_messages(_inputs()))
    assert [message["content"] for message in chat] == [MAIN, "Desc", "Hi"]


def test_outlets_are_exposed_but_never_placed():
    """
    Outlet prompts reach macros and the orchestrator, not the ordered chat.
    """
    orchestrator = _orchestrator()
    orchestrator.prompt_manager.add_prompt(
        {"identifier": "lore", "role": "user", "content": "Lore: {{outlet::world}}"}
    )
    inputs = _inputs(
        extension_prompts={
            "world": ExtensionPrompt(
                value="{{char}} guards dragons.", position=ExtensionPromptType.NONE
            )
        }
    )

    chat, _ = asyncio.run(orchestrator.prepare_messages(inputs))

    assert orchestrator.last_outlets == {"world": "Seraphina guards dragons."}
    assert orchestrator.prompt_manager.outlets == orchestrator.last_outlets
    contents = [message["content"] for message in chat]
    assert "Lore: Seraphina guards dragons." in contents
    assert "Seraphina guards dragons." not in contents


def test_names_behavior_content_prefixes_history():
    """
    Content mode prefixes speaker names into the message text.
    """
    orchestrator = _orchestrator(PromptSettings(names_behavior=2))
    inputs = _inputs(messages=[ChatMessageInput(role="user", content="hi", name="Bob")])
    chat, _ = asyncio.run(orchestrator.prepare_messages(inputs))
    assert chat[-1] == {"role": "user", "content": "Bob: hi", "name": "Bob"}


def test_wrap_in_quotes_setting():
    """
    User messages are quoted when enabled.
    """
    orchestrator = _orchestrator(PromptSettings(wrap_in_quotes=True))
    chat, _ = asyncio.run(orchestrator.prepare_messages(_inputs()))
    assert chat[-1] == {"role": "user", "content": '"Hi"'}


def test_world_info_provider_fills_world_info_and_examples():
    """
    World info is fetched from the provider when none was supplied.
    """
    calls = []

    async def provider(chat, max_context, dry_run, scan_data):
        calls.append((chat, max_context, dry_run, scan_data["trigger"]))
        return {
            "world_info_before": "The realm is old.",
            "world_info_examples": [
                {"content": "<START>\n{{user}}: Who?\n{{char}}: Me.", "position": "before"},
                {"content": ""},
            ],
        }

    orchestrator = _orchestrator(
        PromptSettings(squash_system_messages=False), world_info_provider=provider
    )
    inputs = _inputs(
        messages=[
            ChatMessageInput(role="user", content="Hi"),
            ChatMessageInput(role="assistant", content="Hello"),
        ],
        message_examples=[[ExampleMessage(content="Card example", name="example_user")]],
    )

    chat, _ = asyncio.run(orchestrator.prepare_messages(inputs))

    assert calls == [(["Hello", "Hi"], 4095, False, "normal")]
    contents = [message["content"] for message in chat]
    assert contents[1] == "The realm is old."
    assert contents.index("Who?") < contents.index("Card example")


def test_world_info_provider_skipped_when_world_info_supplied():
    """
    Supplied world info bypasses the provider.
    """

    def provider(*args):
        raise AssertionError("provider should not be called")

    orchestrator = _orchestrator(world_info_provider=provider)
    chat, _ = asyncio.run(orchestrator.prepare_messages(_inputs(world_info_after="Known.")))
    assert "Known." in chat[0]["content"]


def _failing_populator(error):
    async def populate(prompts, assembler, *args):
        assembler.add(MessageGroup("main", Message("system", "partial", "main", tokens=1)))
        raise error

    return populate


def test_cleanup_runs_after_failure_by_default():
    """
    The default policy cleans up a partially filled tree and re-raises.
    """
    renders = []
    orchestrator = _orchestrator(renders=renders, populator=_failing_populator(RuntimeError("boom")))
    with pytest.raises(RuntimeError, match="boom"):
        asyncio.run(orchestrator.prepare_messages(_inputs()))
    assert renders == [False]
    assert orchestrator.prompt_manager.token_handler.get_counts()["main"] == 1


def test_cleanup_on_success_policy_skips_failed_runs():
    """
    The on_success policy leaves failed runs untouched.
    """
    renders = []
    orchestrator = _orchestrator(
        PromptSettings(cleanup_policy=CleanupPolicy.ON_SUCCESS),
        renders=renders,
        populator=_failing_populator(RuntimeError("boom")),
    )
    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.prepare_messages(_inputs()))
    assert renders == []
    assert orchestrator.prompt_manager.messages is None


def test_cancellation_propagates_after_cleanup():
    """
    Cancellation is not swallowed and cleanup still runs.
    """
    renders = []
    orchestrator = _orchestrator(
        renders=renders, populator=_failing_populator(asyncio.CancelledError())
    )
    with pytest.raises(asyncio.CancelledError):
        asyncio.run(orchestrator.prepare_messages(_inputs()))
    assert renders == [False]


def test_budget_errors_propagate():
    """
    A required prompt that cannot fit fails the preparation.
    """
    orchestrator = _orchestrator(PromptSettings(openai_max_context=50, openai_max_tokens=0))
    with pytest.raises(TokenBudgetExceededError):
        asyncio.run(orchestrator.prepare_messages(_inputs()))


def test_prepare_messages_from_character():
    """
    Character cards supply the character fields and become active.
    """
    orchestrator = _orchestrator(PromptSettings(squash_system_messages=False))
    card = CharacterCard(
        id="42",
        name="Seraphina",
        description="Guardian.",
        system_prompt="Card rules for {{char}}.",
        mes_example="<START>\n{{user}}: Hi\n{{char}}: Hello",
    )

    chat, _ = asyncio.run(
        orchestrator.prepare_messages_from_character(
            card, PromptInputs(messages=[ChatMessageInput(role="user", content="Hey")])
        )
    )

    assert orchestrator.prompt_manager.active_character is card
    assert orchestrator.prompt_manager.char_name == "Seraphina"
    assert chat[0]["content"] == "Card rules for Seraphina."
    assert {"role": "system", "content": "Hello", "name": "example_assistant"} in chat
    assert chat[-1] == {"role": "user", "content": "Hey"}


def test_switching_characters_uses_each_card_name():
    """
    Each character card brings its own name to macros and to the manager.
    """
    orchestrator = _orchestrator(PromptSettings(squash_system_messages=False))
    history = PromptInputs(messages=[ChatMessageInput(role="user", content="Hey")])
    first = CharacterCard(id="1", name="Sera", description="{{char}} is a guardian.")
    second = CharacterCard(id="2", name="Bram", description="{{char}} is a smith.")

    asyncio.run(orchestrator.prepare_messages_from_character(first, history))
    chat, _ = asyncio.run(orchestrator.prepare_messages_from_character(second, history))

    contents = [message["content"] for message in chat]
    assert orchestrator.prompt_manager.char_name == "Bram"
    assert orchestrator.prompt_manager.active_character is second
    assert "Bram is a smith." in contents
    assert "Write Bram's next reply in a fictional chat between Bram and Alice." in contents
    assert not any("Sera" in content for content in contents)


def test_explicit_character_name_wins_over_card_name():
    """
    A display name passed by the caller replaces the card name.
    """
    orchestrator = _orchestrator(PromptSettings(squash_system_messages=False))
    card = CharacterCard(id="1", name="Sera", description="{{char}} is a guardian.")

    chat, _ = asyncio.run(
        orchestrator.prepare_messages_from_character(card, PromptInputs(), char_name="Lady Sera")
    )

    assert orchestrator.prompt_manager.char_name == "Lady Sera"
    assert "Lady Sera is a guardian." in [message["content"] for message in chat]


def test_world_info_provider_runs_with_empty_history():
    """
    World info is requested even before the first chat message.
    """
    calls = []

    def provider(chat, max_context, dry_run, scan_data):
        calls.append(chat)
        return WorldInfoResult(world_info_before="The realm is old.")

    orchestrator = _orchestrator(
        PromptSettings(squash_system_messages=False), world_info_provider=provider
    )
    chat, _ = asyncio.run(orchestrator.prepare_messages(_inputs(messages=[])))

    assert calls == [[]]
    assert "The realm is old." in [message["content"] for message in chat]
