"""
Prompt definitions, prompt ordering and token-count bookkeeping.
"""

from __future__ import annotations

import inspect
import logging
import re
import unicodedata
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, field_validator

from .constants import DEFAULT_PROMPT_IDENTIFIERS
from .macros import Substitute, outlet_macros, substitute_params
from .messages import node_tokens
from .models import PromptSettings
from .registry import Prompt, PromptRegistry
from .tokens import TokenHandler

logger = logging.getLogger(__name__)

GLOBAL_PROMPT_ORDER_ID = "100001"

DEFAULT_PROMPTS: List[Dict[str, Any]] = [
    {
        "identifier": "main",
        "name": "Main Prompt",
        "system_prompt": True,
        "role": "system",
        "content": (
            "Write {{char}}'s next reply in a fictional chat between {{charIfNotGroup}} and {{user}}."
        ),
    },
    {
        "identifier": "nsfw",
        "name": "Auxiliary Prompt",
        "system_prompt": True,
        "role": "system",
        "content": "",
    },
    {"identifier": "dialogueExamples", "name": "Chat Examples", "system_prompt": True, "marker": True},
    {
        "identifier": "jailbreak",
        "name": "Post-History Instructions",
        "system_prompt": True,
        "role": "system",
        "content": "",
    },
    {"identifier": "chatHistory", "name": "Chat History", "system_prompt": True, "marker": True},
    {"identifier": "worldInfoAfter", "name": "World Info (after)", "system_prompt": True, "marker": True},
    {"identifier": "worldInfoBefore", "name": "World Info (before)", "system_prompt": True, "marker": True},
    {
        "identifier": "enhanceDefinitions",
        "name": "Enhance Definitions",
        "system_prompt": True,
        "role": "system",
        "content": (
            "If you have more knowledge of {{char}}, add to the character's lore and personality to "
            "enhance them but keep the Character Sheet's definitions absolute."
        ),
    },
    {"identifier": "charDescription", "name": "Char Description", "system_prompt": True, "marker": True},
    {"identifier": "charPersonality", "name": "Char Personality", "system_prompt": True, "marker": True},
    {"identifier": "scenario", "name": "Scenario", "system_prompt": True, "marker": True},
    {
        "identifier": "personaDescription",
        "name": "Persona Description",
        "system_prompt": True,
        "marker": True,
    },
]

DEFAULT_PROMPT_ORDER: List[Dict[str, Any]] = [
    {"identifier": "main", "enabled": True},
    {"identifier": "worldInfoBefore", "enabled": True},
    {"identifier": "charDescription", "enabled": True},
    {"identifier": "charPersonality", "enabled": True},
    {"identifier": "scenario", "enabled": True},
    {"identifier": "enhanceDefinitions", "enabled": False},
    {"identifier": "nsfw", "enabled": True},
    {"identifier": "worldInfoAfter", "enabled": True},
    {"identifier": "dialogueExamples", "enabled": True},
    {"identifier": "chatHistory", "enabled": True},
    {"identifier": "jailbreak", "enabled": True},
]

RenderCallback = Callable[["PromptManager", bool], Union[None, Awaitable[None]]]


class PromptOrderEntry(BaseModel):
    """
    One prompt reference within a prompt order.
    """

    identifier: str
    enabled: bool = True


class PromptOrder(BaseModel):
    """
    Ordered prompt references for one character.

    :ivar character_id: Character identifier; the global order uses ``100001``.
    :vartype character_id: str
    :ivar order: Prompt references in assembly order.
    :vartype order: list[PromptOrderEntry]
    """

    character_id: str
    order: List[PromptOrderEntry] = Field(default_factory=list)

    @field_validator("character_id", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        return str(value) if isinstance(value, int) else value


def default_prompt_orders() -> List[PromptOrder]:
    return [PromptOrder(character_id=GLOBAL_PROMPT_ORDER_ID, order=DEFAULT_PROMPT_ORDER)]


def sanitize_name(name: Optional[str]) -> str:
    """
    Reduce a speaker name to the characters providers accept in the ``name`` field.

    :param name: Raw speaker name.
    :type name: str or None
    :return: Name with accents removed, other characters replaced by underscores, at most 64
        characters long.
    :rtype: str
    """
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name)
    stripped = "".join(character for character in decomposed if not unicodedata.combining(character))
    return re.sub(r"[^a-zA-Z0-9_-]", "_", stripped)[:64]


class PromptManager:
    """
    Default prompt manager.

    Holds prompt definitions and per-character prompt orders, prepares prompt content through the
    macro port and records token counts after each assembly.

    :param settings: Prompt settings exposed as ``service_settings``.
    :type settings: PromptSettings or None
    :param prompts: Prompt definitions; the built-in defaults are used when omitted.
    :type prompts: Iterable[Prompt or Mapping[str, Any]] or None
    :param prompt_orders: Prompt orders keyed by character; the default global order is used
        when omitted.
    :type prompt_orders: Iterable[PromptOrder or Mapping[str, Any]] or None
    :param user_name: Value of ``{{user}}``.
    :type user_name: str
    :param char_name: Value of ``{{char}}``.
    :type char_name: str
    :param active_character: Character whose prompt order decides disabled prompts.
    :type active_character: Any
    :param group: Group member names for group chats.
    :type group: str or None
    :param token_handler: Token-count snapshot holder.
    :type token_handler: TokenHandler or None
    :param substitute: Macro port.
    :type substitute: callable
    :param render_callback: Optional hook awaited on :meth:`render`.
    :type render_callback: callable or None
    """

    def __init__(
        self,
        settings: Optional[PromptSettings] = None,
        prompts: Optional[Iterable[Union[Prompt, Mapping[str, Any]]]] = None,
        prompt_orders: Optional[Iterable[Union[PromptOrder, Mapping[str, Any]]]] = None,
        *,
        user_name: str = "",
        char_name: str = "",
        active_character: Any = None,
        group: Optional[str] = None,
        token_handler: Optional[TokenHandler] = None,
        substitute: Substitute = substitute_params,
        render_callback: Optional[RenderCallback] = None,
    ) -> None:
        self.service_settings = settings or PromptSettings()
        self.prompts: List[Prompt] = [
            _as_prompt(prompt) for prompt in (DEFAULT_PROMPTS if prompts is None else prompts)
        ]
        self.prompt_orders: List[PromptOrder] = [
            order if isinstance(order, PromptOrder) else PromptOrder.model_validate(order)
            for order in (default_prompt_orders() if prompt_orders is None else prompt_orders)
        ]
        self.user_name = user_name
        self.char_name = char_name
        self.active_character = active_character
        self.group = group
        self.token_handler = token_handler if token_handler is not None else TokenHandler()
        self.substitute = substitute
        self.render_callback = render_callback
        self.outlets: Dict[str, str] = {}
        self.messages = None
        self.overridden_prompts: List[str] = []

    def get_prompt_by_id(self, identifier: str) -> Optional[Prompt]:
        return next((prompt for prompt in self.prompts if prompt.identifier == identifier), None)

    def add_prompt(self, prompt: Union[Prompt, Mapping[str, Any]]) -> Prompt:
        """
        Add or replace a prompt definition.

        :param prompt: Prompt definition.
        :type prompt: Prompt or Mapping[str, Any]
        :return: Stored prompt.
        :rtype: Prompt
        """
        stored = _as_prompt(prompt)
        for index, existing in enumerate(self.prompts):
            if existing.identifier == stored.identifier:
                self.prompts[index] = stored
                return stored
        self.prompts.append(stored)
        return stored

    def get_prompt_order_for_character(self, character: Any) -> List[PromptOrderEntry]:
        """
        Return the prompt order of a character.

        :param character: Character identifier, or an object with an ``id`` attribute or key.
        :type character: Any
        :return: Prompt order entries; empty when the character has no order.
        :rtype: list[PromptOrderEntry]
        """
        character_id = _character_id(character)
        if character_id is None:
            return []
        for prompt_order in self.prompt_orders:
            if prompt_order.character_id == character_id:
                return prompt_order.order
        return []

    def get_prompt_order_entry(self, character: Any, identifier: str) -> Optional[PromptOrderEntry]:
        order = self.get_prompt_order_for_character(character)
        return next((entry for entry in order if entry.identifier == identifier), None)

    def add_prompt_order_for_character(
        self, character: Any, order: Iterable[Union[PromptOrderEntry, Mapping[str, Any]]]
    ) -> None:
        """
        Set the prompt order of a character, replacing any existing one.

        :param character: Character identifier or object with an ``id``.
        :type character: Any
        :param order: Prompt order entries.
        :type order: Iterable[PromptOrderEntry or Mapping[str, Any]]
        :return: None.
        :rtype: None
        :raises ValueError: If the character has no identifier.
        """
        character_id = _character_id(character)
        if character_id is None:
            raise ValueError("Prompt orders require a character identifier")
        entries = [
            entry if isinstance(entry, PromptOrderEntry) else PromptOrderEntry.model_validate(entry)
            for entry in order
        ]
        self.prompt_orders = [
            prompt_order
            for prompt_order in self.prompt_orders
            if prompt_order.character_id != character_id
        ]
        self.prompt_orders.append(PromptOrder(character_id=character_id, order=entries))

    def is_prompt_disabled_for_active_character(self, identifier: str) -> bool:
        if self.active_character is None:
            return False
        entry = self.get_prompt_order_entry(self.active_character, identifier)
        return entry is not None and not entry.enabled

    @staticmethod
    def should_trigger(prompt: Optional[Prompt], generation_type: str) -> bool:
        if prompt is None or not prompt.injection_trigger:
            return True
        return generation_type in prompt.injection_trigger

    def prepare_prompt(
        self, prompt: Union[Prompt, Mapping[str, Any]], original: Optional[str] = None
    ) -> Prompt:
        """
        Copy a prompt with its content run through the macro port.

        :param prompt: Prompt to prepare.
        :type prompt: Prompt or Mapping[str, Any]
        :param original: Content replaced by an override, exposed as ``{{original}}``.
        :type original: str or None
        :return: Prepared copy.
        :rtype: Prompt
        """
        prepared = _as_prompt(prompt).clone()
        prepared.content = self.substitute(
            prepared.content,
            self.user_name,
            self.char_name,
            original=original if isinstance(original, str) else None,
            group=self.group,
            additional=outlet_macros(self.outlets),
        )
        return prepared

    def get_prompt_collection(self, generation_type: str = "normal") -> PromptRegistry:
        """
        Build the prompt registry for one generation.

        Prompts follow the global order. Enabled prompts whose triggers allow the generation type
        are prepared; empty prompts are skipped unless they are markers or ``main``. A disabled
        ``main`` is kept with empty content. User-added prompts missing from the order are appended
        and added to the order.

        :param generation_type: Generation type such as ``normal`` or ``impersonate``.
        :type generation_type: str
        :return: Prepared prompt registry.
        :rtype: PromptRegistry
        """
        generation_type = str(generation_type or "normal").lower().strip()
        registry = PromptRegistry()
        processed = set()
        global_order = self.get_prompt_order_for_character(GLOBAL_PROMPT_ORDER_ID)

        for entry in global_order:
            prompt = self.get_prompt_by_id(entry.identifier)
            if prompt is None:
                logger.warning("Prompt %s is in the prompt order but not defined", entry.identifier)
                continue
            if entry.enabled and self.should_trigger(prompt, generation_type):
                if not prompt.content.strip() and entry.identifier != "main" and not prompt.marker:
                    logger.debug("Skipping empty prompt %s", entry.identifier)
                    continue
                registry.add(self.prepare_prompt(prompt))
                processed.add(entry.identifier)
            elif entry.identifier == "main":
                registry.add(self.prepare_prompt(prompt.model_copy(update={"content": ""})))
                processed.add(entry.identifier)

        appended: List[PromptOrderEntry] = []
        for prompt in self.prompts:
            if prompt.identifier in processed or prompt.system_prompt or prompt.marker:
                continue
            if prompt.identifier in DEFAULT_PROMPT_IDENTIFIERS or not prompt.content.strip():
                continue
            if not self.should_trigger(prompt, generation_type):
                continue
            registry.add(self.prepare_prompt(prompt))
            if not any(entry.identifier == prompt.identifier for entry in global_order):
                appended.append(PromptOrderEntry(identifier=prompt.identifier))
        if appended:
            logger.debug("Adding %d prompts missing from the prompt order", len(appended))
            self.add_prompt_order_for_character(GLOBAL_PROMPT_ORDER_ID, [*global_order, *appended])
        return registry

    def sanitize_name(self, name: Optional[str]) -> str:
        return sanitize_name(name)

    def set_chat_completion(self, assembler: Any) -> None:
        """
        Record the assembled tree and its token counts.

        :param assembler: Assembler that finished (or abandoned) a preparation.
        :type assembler: parley.assembler.BudgetAssembler
        :return: None.
        :rtype: None
        """
        self.messages = assembler.get_messages()
        self.populate_token_counts(self.messages)
        self.overridden_prompts = list(assembler.get_overridden_prompts())

    def populate_token_counts(self, messages: Any) -> None:
        self.token_handler.reset_counts()
        counts = self.token_handler.get_counts()
        for item in messages.get_collection():
            identifier = getattr(item, "identifier", None)
            if not identifier:
                logger.warning("Cannot record tokens for an item without identifier")
                continue
            counts[identifier] = node_tokens(item)

    async def render(self, dry_run: bool = True) -> None:
        """
        Run the render hook, if any.

        :param dry_run: Whether the preceding assembly was a dry run.
        :type dry_run: bool
        :return: None.
        :rtype: None
        """
        if self.render_callback is None:
            return
        result = self.render_callback(self, dry_run)
        if inspect.isawaitable(result):
            await result


def _as_prompt(prompt: Union[Prompt, Mapping[str, Any]]) -> Prompt:
    if isinstance(prompt, Prompt):
        return prompt
    return Prompt.model_validate(dict(prompt))


def _character_id(character: Any) -> Optional[str]:
    if character is None:
        return None
    if isinstance(character, (str, int)):
        return str(character)
    if isinstance(character, Mapping):
        value = character.get("id")
    else:
        value = getattr(character, "id", None)
    return None if value is None else str(value)
