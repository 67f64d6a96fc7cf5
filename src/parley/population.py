"""
Default budget-aware population of a chat completion.

Content is added in descending priority: markers, control prompts, ordered prompts, in-prompt
extension notes, chat history and finally dialogue examples. Whatever no longer fits is left out.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .assembler import BudgetAssembler
from .constants import (
    ASSISTANT_PRIMING_TOKENS,
    CHAT_HISTORY_IDENTIFIER,
    CONTROL_PROMPTS_IDENTIFIER,
    DIALOGUE_EXAMPLES_IDENTIFIER,
    MARKER_ORDER,
)
from .macros import Substitute, substitute_params
from .messages import Message, MessageGroup
from .models import (
    ChatMessageInput,
    ExampleMessage,
    InjectionPosition,
    NamesBehavior,
    PromptInputs,
    PromptSettings,
)
from .registry import Prompt, PromptRegistry
from .tokens import TokenCounter

logger = logging.getLogger(__name__)

DEFAULT_EXAMPLE_SEPARATOR = "{Example Dialogue:}"
_IN_PROMPT_NOTES = ("summary", "authorsNote")
_NAMED_BEHAVIORS = (NamesBehavior.COMPLETION, NamesBehavior.CONTENT)


async def add_prompt_to_completion(
    prompts: PromptRegistry,
    assembler: BudgetAssembler,
    prompt_manager: Any,
    token_counter: Optional[TokenCounter],
    source: str,
    target: Optional[str] = None,
) -> None:
    """
    Add one registry prompt as its own group, positioned at its registry index.

    Missing prompts are ignored. Prompts disabled for the active character (except ``main``) and
    absolute prompts are skipped.

    :param prompts: Prepared registry.
    :type prompts: PromptRegistry
    :param assembler: Assembler receiving the group.
    :type assembler: BudgetAssembler
    :param prompt_manager: Prompt manager.
    :type prompt_manager: parley.manager.PromptManager
    :param token_counter: Optional token counter.
    :type token_counter: TokenCounter or None
    :param source: Identifier of the prompt to add.
    :type source: str
    :param target: Identifier whose registry index positions the group; defaults to ``source``.
    :type target: str or None
    :return: None.
    :rtype: None
    :raises parley.errors.TokenBudgetExceededError: If the prompt does not fit.
    """
    prompt = prompts.get(source)
    if prompt is None:
        return
    if source != "main" and prompt_manager.is_prompt_disabled_for_active_character(source):
        logger.debug("Skipping prompt %s because it is disabled", source)
        return
    if prompt.injection_position == InjectionPosition.ABSOLUTE:
        logger.debug("Skipping prompt %s because it is an absolute prompt", source)
        return
    index = prompts.index(target or source)
    message = await Message.from_prompt(prompt, token_counter)
    assembler.add(MessageGroup(source, message), index)


async def _build_control_prompts(
    prompts: PromptRegistry,
    options: PromptInputs,
    history: List[ChatMessageInput],
    prompt_manager: Any,
    token_counter: Optional[TokenCounter],
    settings: PromptSettings,
    substitute: Substitute,
) -> MessageGroup:
    control = MessageGroup(CONTROL_PROMPTS_IDENTIFIER)
    user_name, char_name = prompt_manager.user_name, prompt_manager.char_name

    impersonate = prompts.get("impersonate")
    if options.type == "impersonate" and impersonate is not None:
        control.add(await Message.from_prompt(impersonate, token_counter))

    if options.type == "continue" and settings.continue_prefill and history:
        continued = history.pop()
        prefill = ""
        if continued.role == "assistant":
            prefill = substitute(settings.assistant_prefill, user_name, char_name)
        content = "\n\n".join(part for part in (prefill, continued.content) if part)
        message = await Message.create(continued.role, content, "continuePrefill", token_counter)
        if continued.name and settings.names_behavior in _NAMED_BEHAVIORS:
            name = prompt_manager.sanitize_name(continued.name)
            if name:
                await message.set_name(name, token_counter)
        control.add(message)

    if options.type == "continue" and settings.continue_nudge_prompt:
        nudge = substitute(
            settings.continue_nudge_prompt,
            user_name,
            char_name,
            additional={"lastChatMessage": options.cycle_prompt.strip()},
        ).strip()
        if nudge:
            control.add(await Message.create("system", nudge, "continueNudge", token_counter))

    # The quiet prompt always closes the control prompts.
    quiet = prompts.get("quietPrompt")
    if quiet is not None and quiet.content:
        message = await Message.from_prompt(quiet, token_counter)
        if options.quiet_image:
            await message.add_image(options.quiet_image)
        control.add(message)
    return control


async def populate_chat_history(
    history: List[ChatMessageInput],
    prompts: PromptRegistry,
    assembler: BudgetAssembler,
    prompt_manager: Any,
    token_counter: Optional[TokenCounter],
    settings: PromptSettings,
    substitute: Substitute = substitute_params,
) -> int:
    """
    Fill the chat history group from the newest message backwards.

    The walk stops at the first message that no longer fits, so the kept history is always a
    contiguous run ending at the newest message. The new-chat separator is reserved up front and
    placed before the oldest kept message.

    :param history: Chat messages, oldest first.
    :type history: list[ChatMessageInput]
    :param prompts: Prepared registry.
    :type prompts: PromptRegistry
    :param assembler: Assembler receiving the history.
    :type assembler: BudgetAssembler
    :param prompt_manager: Prompt manager.
    :type prompt_manager: parley.manager.PromptManager
    :param token_counter: Optional token counter.
    :type token_counter: TokenCounter or None
    :param settings: Prompt settings.
    :type settings: PromptSettings
    :param substitute: Macro port.
    :type substitute: callable
    :return: Number of chat messages inserted.
    :rtype: int
    """
    if not assembler.has(CHAT_HISTORY_IDENTIFIER):
        if prompts.has(CHAT_HISTORY_IDENTIFIER):
            assembler.add(MessageGroup(CHAT_HISTORY_IDENTIFIER), prompts.index(CHAT_HISTORY_IDENTIFIER))
        else:
            logger.warning("No chatHistory prompt in the prompt order, appending chat history")
            assembler.add(MessageGroup(CHAT_HISTORY_IDENTIFIER))

    new_chat = substitute(
        settings.new_chat_prompt or settings.new_group_chat_prompt,
        prompt_manager.user_name,
        prompt_manager.char_name,
    )
    new_chat_message = None
    if new_chat.strip():
        new_chat_message = await Message.create("system", new_chat, "newMainChat", token_counter)
        assembler.reserve_budget(new_chat_message)

    inserted = 0
    total = len(history)
    for index in range(total - 1, -1, -1):
        entry = history[index]
        if not entry.role or not entry.content:
            logger.warning("Skipping invalid chat message at index %d", index)
            continue
        identifier = f"{CHAT_HISTORY_IDENTIFIER}-{total - index}"
        prepared = prompt_manager.prepare_prompt(
            Prompt(identifier=identifier, role=entry.role, content=entry.content)
        )
        message = await Message.create(entry.role, prepared.content, identifier, token_counter)
        if entry.name and settings.names_behavior in _NAMED_BEHAVIORS:
            name = prompt_manager.sanitize_name(entry.name)
            if name:
                await message.set_name(name, token_counter)
        if not assembler.can_afford(message):
            logger.info("Token budget reached after %d of %d chat messages", inserted, total)
            break
        assembler.insert_at_start(message, CHAT_HISTORY_IDENTIFIER)
        inserted += 1

    if new_chat_message is not None:
        assembler.free_budget(new_chat_message)
        assembler.insert_at_start(new_chat_message, CHAT_HISTORY_IDENTIFIER)
    return inserted


async def populate_dialogue_examples(
    prompts: PromptRegistry,
    assembler: BudgetAssembler,
    message_examples: List[List[ExampleMessage]],
    prompt_manager: Any,
    token_counter: Optional[TokenCounter],
    settings: PromptSettings,
    substitute: Substitute = substitute_params,
) -> int:
    """
    Add whole example dialogues while they fit.

    Each dialogue is preceded by a ``newChat`` separator and is added only when the separator and
    every line fit together.

    :param prompts: Prepared registry.
    :type prompts: PromptRegistry
    :param assembler: Assembler receiving the examples.
    :type assembler: BudgetAssembler
    :param message_examples: Example dialogues.
    :type message_examples: list[list[ExampleMessage]]
    :param prompt_manager: Prompt manager.
    :type prompt_manager: parley.manager.PromptManager
    :param token_counter: Optional token counter.
    :type token_counter: TokenCounter or None
    :param settings: Prompt settings.
    :type settings: PromptSettings
    :param substitute: Macro port.
    :type substitute: callable
    :return: Number of dialogues added.
    :rtype: int
    """
    index = prompts.index(DIALOGUE_EXAMPLES_IDENTIFIER)
    if index < 0:
        return 0
    assembler.add(MessageGroup(DIALOGUE_EXAMPLES_IDENTIFIER), index)
    if not message_examples:
        return 0

    separator_text = substitute(
        settings.new_example_chat_prompt or DEFAULT_EXAMPLE_SEPARATOR,
        prompt_manager.user_name,
        prompt_manager.char_name,
    )
    separator = await Message.create("system", separator_text, "newChat", token_counter)

    added = 0
    for dialogue_index, dialogue in enumerate(message_examples):
        lines: List[Message] = []
        for line_index, example in enumerate(dialogue):
            content = substitute(example.content, prompt_manager.user_name, prompt_manager.char_name)
            identifier = f"{DIALOGUE_EXAMPLES_IDENTIFIER} {dialogue_index}-{line_index}"
            message = await Message.create("system", content, identifier, token_counter)
            if example.name:
                await message.set_name(example.name, token_counter)
            lines.append(message)
        block_separator = separator.copy()
        if not assembler.can_afford_all([block_separator, *lines]):
            logger.info("Token budget reached after %d example dialogues", added)
            break
        assembler.insert(block_separator, DIALOGUE_EXAMPLES_IDENTIFIER)
        for message in lines:
            assembler.insert(message, DIALOGUE_EXAMPLES_IDENTIFIER)
        added += 1
    return added


async def populate_chat_completion(
    prompts: PromptRegistry,
    assembler: BudgetAssembler,
    options: PromptInputs,
    prompt_manager: Any,
    token_counter: Optional[TokenCounter] = None,
    settings: Optional[PromptSettings] = None,
    substitute: Substitute = substitute_params,
) -> None:
    """
    Fill a chat completion with as much content as the budget allows.

    :param prompts: Prepared registry.
    :type prompts: PromptRegistry
    :param assembler: Assembler with its budget already set.
    :type assembler: BudgetAssembler
    :param options: Prompt inputs (bias, quiet prompt, generation type, chat and examples).
    :type options: PromptInputs
    :param prompt_manager: Prompt manager.
    :type prompt_manager: parley.manager.PromptManager
    :param token_counter: Optional token counter.
    :type token_counter: TokenCounter or None
    :param settings: Prompt settings; the manager's settings are used when omitted.
    :type settings: PromptSettings or None
    :param substitute: Macro port.
    :type substitute: callable
    :return: None.
    :rtype: None
    :raises parley.errors.TokenBudgetExceededError: If a required prompt does not fit.
    """
    settings = settings or prompt_manager.service_settings
    history = list(options.messages)

    async def add(source: str) -> None:
        await add_prompt_to_completion(prompts, assembler, prompt_manager, token_counter, source)

    # Every reply is primed with the assistant header.
    assembler.reserve_budget(ASSISTANT_PRIMING_TOKENS)

    for identifier in MARKER_ORDER:
        await add(identifier)

    assembler.set_overridden_prompts(list(prompts.overridden_prompts))
    control = await _build_control_prompts(
        prompts, options, history, prompt_manager, token_counter, settings, substitute
    )
    assembler.reserve_budget(control)

    user_prompts = [
        prompt.identifier
        for prompt in prompts
        if not prompt.system_prompt and prompt.injection_position != InjectionPosition.ABSOLUTE
    ]
    for identifier in ["nsfw", "jailbreak", *user_prompts]:
        await add(identifier)
    await add("enhanceDefinitions")
    if options.bias.strip():
        await add("bias")

    for identifier in _IN_PROMPT_NOTES:
        note = prompts.get(identifier)
        if note is None or note.injection_position == InjectionPosition.ABSOLUTE:
            continue
        if not assembler.has("main"):
            logger.warning("Cannot place %s without a main prompt", identifier)
            continue
        message = await Message.from_prompt(note, token_counter)
        assembler.insert(message, "main", note.injection_depth)

    await populate_chat_history(
        history, prompts, assembler, prompt_manager, token_counter, settings, substitute
    )
    await populate_dialogue_examples(
        prompts,
        assembler,
        list(options.message_examples),
        prompt_manager,
        token_counter,
        settings,
        substitute,
    )

    assembler.free_budget(control)
    if len(control):
        assembler.add(control)
