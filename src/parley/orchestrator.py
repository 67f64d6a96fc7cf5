"""
Driving workflow that turns prompt inputs into a budgeted chat.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .assembler import BudgetAssembler
from .characters import (
    CharacterCard,
    parse_example_dialogues,
    prepare_character_prompt_data,
    split_example_block,
)
from .limits import max_context_for_model
from .macros import Substitute, substitute_params
from .models import CleanupPolicy, NamesBehavior, PromptInputs, PromptSettings, WorldInfoResult
from .population import populate_chat_completion
from .preparation import collect_outlet_prompts, prepare_prompts
from .tokens import TokenCounter

logger = logging.getLogger(__name__)

ChatMessages = List[Dict[str, Any]]
PreparedChat = Tuple[Optional[ChatMessages], Optional[Dict[str, int]]]
WorldInfoProvider = Callable[
    [List[str], int, bool, Dict[str, Any]],
    Union[WorldInfoResult, Mapping[str, Any], Awaitable[Union[WorldInfoResult, Mapping[str, Any]]]],
]
Populator = Callable[..., Awaitable[None]]


def apply_names_to_content(chat: ChatMessages) -> ChatMessages:
    """
    Prefix the content of named, non-system messages with ``"Name: "``.

    Messages already carrying the prefix are left alone, so applying the pass twice changes
    nothing.

    :param chat: Chat messages in wire format.
    :type chat: list[dict[str, Any]]
    :return: New list of chat messages.
    :rtype: list[dict[str, Any]]
    """
    updated: ChatMessages = []
    for message in chat:
        name = message.get("name")
        content = message.get("content")
        if name and isinstance(content, str) and content and message.get("role") != "system":
            prefix = f"{name}: "
            if not content.startswith(prefix):
                message = {**message, "content": f"{prefix}{content}"}
        updated.append(message)
    return updated


def wrap_user_messages_in_quotes(chat: ChatMessages) -> ChatMessages:
    """
    Wrap the content of every non-empty user message in double quotes.

    :param chat: Chat messages in wire format.
    :type chat: list[dict[str, Any]]
    :return: New list of chat messages.
    :rtype: list[dict[str, Any]]
    """
    return [
        {**message, "content": f'"{message["content"]}"'}
        if message.get("role") == "user" and isinstance(message.get("content"), str) and message["content"]
        else message
        for message in chat
    ]


class PromptOrchestrator:
    """
    Prepare chat completion messages within a token budget.

    Collaborators are injected: the prompt manager, the token counter, the macro port, the world
    info provider and the populator that fills the budget.

    :param prompt_manager: Prompt manager.
    :type prompt_manager: parley.manager.PromptManager
    :param settings: Prompt settings; the manager's settings are used when omitted.
    :type settings: PromptSettings or None
    :param token_counter: Token counter used to price messages.
    :type token_counter: TokenCounter or None
    :param substitute: Macro port.
    :type substitute: callable
    :param world_info_provider: Optional world info provider.
    :type world_info_provider: callable or None
    :param populator: Budget-filling routine.
    :type populator: callable
    """

    def __init__(
        self,
        prompt_manager: Any,
        settings: Optional[PromptSettings] = None,
        *,
        token_counter: Optional[TokenCounter] = None,
        substitute: Substitute = substitute_params,
        world_info_provider: Optional[WorldInfoProvider] = None,
        populator: Populator = populate_chat_completion,
    ) -> None:
        self.prompt_manager = prompt_manager
        self._settings = settings
        self.token_counter = token_counter
        self.substitute = substitute
        self.world_info_provider = world_info_provider
        self.populator = populator
        self.last_outlets: Dict[str, str] = {}
        self.last_assembler: Optional[BudgetAssembler] = None

    @property
    def settings(self) -> PromptSettings:
        return self._settings or self.prompt_manager.service_settings

    def effective_max_context(self) -> int:
        """
        Resolve the context window, capped by the model ceiling when the model is known.

        :return: Context window size in tokens.
        :rtype: int
        """
        settings = self.settings
        max_context = settings.openai_max_context
        if settings.api_provider and settings.model:
            ceiling = max_context_for_model(
                settings.model, settings.api_provider, settings.max_context_unlocked
            )
            max_context = min(max_context, ceiling)
        return max_context

    async def _resolve_world_info(
        self, inputs: PromptInputs, max_context: int, dry_run: bool
    ) -> PromptInputs:
        if inputs.world_info_before or inputs.world_info_after:
            return inputs
        if self.world_info_provider is None:
            return inputs

        chat_for_world_info = [message.content for message in reversed(inputs.messages)]
        scan_data = {
            "trigger": inputs.type or "normal",
            "persona_description": self.settings.persona_description,
            "character_description": inputs.char_description,
            "character_personality": inputs.char_personality,
            "character_depth_prompt": "",
            "scenario": inputs.scenario,
            "creator_notes": "",
        }
        result = self.world_info_provider(chat_for_world_info, max_context, dry_run, scan_data)
        if inspect.isawaitable(result):
            result = await result
        world_info = (
            result if isinstance(result, WorldInfoResult) else WorldInfoResult.model_validate(result)
        )

        examples = list(inputs.message_examples)
        user_name, char_name = self.prompt_manager.user_name, inputs.char_name
        for example in world_info.world_info_examples:
            if not example.content:
                continue
            blocks = [
                split_example_block(block, user_name, char_name)
                for block in parse_example_dialogues(example.content)
            ]
            if example.position == "before":
                examples = blocks + examples
            else:
                examples = examples + blocks
        return inputs.model_copy(
            update={
                "world_info_before": world_info.world_info_before,
                "world_info_after": world_info.world_info_after,
                "message_examples": examples,
            }
        )

    async def _cleanup(self, assembler: BudgetAssembler, dry_run: bool) -> None:
        self.prompt_manager.set_chat_completion(assembler)
        if self.settings.squash_system_messages and not dry_run:
            await assembler.squash_system_messages(self.token_counter)
        if not dry_run:
            await self.prompt_manager.render(False)

    async def prepare_messages(self, inputs: PromptInputs, dry_run: bool = False) -> PreparedChat:
        """
        Prepare the chat completion messages for one generation.

        History population errors are logged and re-raised. The cleanup (token bookkeeping,
        squashing and rendering) runs afterwards according to ``settings.cleanup_policy``:
        ``always`` also cleans up after a failure, leaving a partially filled tree behind;
        ``on_success`` skips it.

        :param inputs: Prompt inputs.
        :type inputs: PromptInputs
        :param dry_run: Whether this is a token-counting pass rather than a real generation.
        :type dry_run: bool
        :return: Chat messages and the token-count snapshot; ``(None, None)`` when a dry run has
            no active character.
        :rtype: tuple[list[dict[str, Any]] or None, dict[str, int] or None]
        :raises parley.errors.PromptAssemblyError: If a required prompt does not fit or a
            referenced group is missing.
        """
        if dry_run and self.prompt_manager.active_character is None:
            return None, None

        settings = self.settings
        assembler = BudgetAssembler()
        self.last_assembler = assembler
        max_context = self.effective_max_context()
        assembler.set_token_budget(max_context, settings.openai_max_tokens)

        inputs = await self._resolve_world_info(inputs, max_context, dry_run)
        outlets = collect_outlet_prompts(
            inputs.extension_prompts,
            self.substitute,
            self.prompt_manager.user_name,
            self.prompt_manager.char_name,
        )
        self.last_outlets = outlets
        self.prompt_manager.outlets = outlets

        succeeded = False
        try:
            prompts = prepare_prompts(inputs, self.prompt_manager, settings, self.substitute)
            await self.populator(
                prompts,
                assembler,
                inputs,
                self.prompt_manager,
                self.token_counter,
                settings,
                self.substitute,
            )
            succeeded = True
        except Exception as exc:
            logger.error("Prompt preparation failed: %s", exc)
            raise
        finally:
            if succeeded or settings.cleanup_policy == CleanupPolicy.ALWAYS:
                await self._cleanup(assembler, dry_run)

        chat = assembler.get_chat()
        if settings.names_behavior == NamesBehavior.CONTENT:
            chat = apply_names_to_content(chat)
        if settings.wrap_in_quotes:
            chat = wrap_user_messages_in_quotes(chat)

        token_handler = getattr(self.prompt_manager, "token_handler", None)
        counts = token_handler.get_counts() if token_handler is not None else None
        return chat, counts

    async def prepare_messages_from_character(
        self,
        character: CharacterCard,
        inputs: Optional[PromptInputs] = None,
        chat_metadata: Optional[Mapping[str, Any]] = None,
        dry_run: bool = False,
        char_name: Optional[str] = None,
    ) -> PreparedChat:
        """
        Prepare messages for a character card.

        The character becomes the manager's active character and its name becomes the manager's
        character name on every call. Card fields replace the matching fields of ``inputs``.

        :param character: Character card.
        :type character: CharacterCard
        :param inputs: Remaining inputs such as chat messages and extension prompts.
        :type inputs: PromptInputs or None
        :param chat_metadata: Per-chat overrides of scenario, examples and system prompt.
        :type chat_metadata: Mapping[str, Any] or None
        :param dry_run: Whether this is a token-counting pass.
        :type dry_run: bool
        :param char_name: Display name for the character; the card name is used when omitted.
        :type char_name: str or None
        :return: Chat messages and the token-count snapshot.
        :rtype: tuple[list[dict[str, Any]] or None, dict[str, int] or None]
        """
        name = char_name or character.name
        self.prompt_manager.active_character = character
        self.prompt_manager.char_name = name
        data = prepare_character_prompt_data(
            character,
            chat_metadata,
            self.prompt_manager.user_name,
            name,
        )
        base = inputs or PromptInputs()
        return await self.prepare_messages(base.model_copy(update=data.input_fields()), dry_run)

