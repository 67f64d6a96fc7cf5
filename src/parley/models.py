"""
Pydantic models for Parley settings and prompt assembly inputs.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import DEFAULT_MAX_CONTEXT, DEFAULT_MAX_TOKENS

PROMPT_ROLES = ("system", "user", "assistant")
_ROLE_BY_NUMBER = {0: "system", 1: "user", 2: "assistant"}


def normalize_prompt_role(value: object) -> str:
    """
    Coerce a role value into one of the prompt roles.

    Numeric roles follow the extension convention (0 system, 1 user, 2 assistant). Anything that is
    not a recognized role becomes ``system``.

    :param value: Raw role value.
    :type value: object
    :return: Normalized role.
    :rtype: str
    """
    if isinstance(value, bool):
        return "system"
    if isinstance(value, int):
        return _ROLE_BY_NUMBER.get(value, "system")
    if isinstance(value, str) and value.strip().lower() in PROMPT_ROLES:
        return value.strip().lower()
    return "system"


class InjectionPosition(IntEnum):
    """
    Where a prompt lands relative to the ordered prompt list.
    """

    RELATIVE = 0
    ABSOLUTE = 1


class ExtensionPromptType(IntEnum):
    """
    Placement of an extension prompt.

    ``NONE`` marks an outlet: the prompt has no place in the ordered list and is only reachable
    through its ``{{outlet::key}}`` macro.
    """

    NONE = 0
    BEFORE_PROMPT = 1
    IN_PROMPT = 2


class NamesBehavior(IntEnum):
    """
    How speaker names reach the provider.
    """

    NONE = -1
    DEFAULT = 0
    COMPLETION = 1
    CONTENT = 2


class PersonaDescriptionPosition(IntEnum):
    """
    Placement of the user persona description.
    """

    IN_PROMPT = 0
    AFTER_CHAR = 1
    TOP_AN = 2
    BOTTOM_AN = 3
    AT_DEPTH = 4
    NONE = 9


class CleanupPolicy(str, Enum):
    """
    Whether the squash/render cleanup runs after a failed history population.
    """

    ALWAYS = "always"
    ON_SUCCESS = "on_success"


class PromptSettings(BaseModel):
    """
    Chat completion settings consumed by prompt assembly.

    :ivar openai_max_context: Context window size requested by the user.
    :vartype openai_max_context: int
    :ivar openai_max_tokens: Tokens reserved for the model response.
    :vartype openai_max_tokens: int
    :ivar api_provider: Optional provider identifier used to look up the model ceiling.
    :vartype api_provider: str or None
    :ivar model: Optional model identifier used to look up the model ceiling.
    :vartype model: str or None
    :ivar max_context_unlocked: Whether the model ceiling is lifted.
    :vartype max_context_unlocked: bool
    :ivar scenario_format: Template wrapping the scenario text.
    :vartype scenario_format: str
    :ivar personality_format: Template wrapping the personality text.
    :vartype personality_format: str
    :ivar wi_format: Positional template wrapping world info (``{0}``).
    :vartype wi_format: str
    :ivar group_nudge_prompt: Group chat nudge template.
    :vartype group_nudge_prompt: str
    :ivar impersonation_prompt: Impersonation instruction template.
    :vartype impersonation_prompt: str
    :ivar new_chat_prompt: Separator placed before chat history.
    :vartype new_chat_prompt: str
    :ivar new_group_chat_prompt: Separator used when ``new_chat_prompt`` is blank.
    :vartype new_group_chat_prompt: str
    :ivar new_example_chat_prompt: Separator placed before each example dialogue.
    :vartype new_example_chat_prompt: str
    :ivar continue_nudge_prompt: Instruction appended when continuing a message.
    :vartype continue_nudge_prompt: str
    :ivar continue_prefill: Whether continuation moves the last message into the control prompts.
    :vartype continue_prefill: bool
    :ivar assistant_prefill: Text prepended to a continued assistant message.
    :vartype assistant_prefill: str
    :ivar squash_system_messages: Whether consecutive system messages are merged.
    :vartype squash_system_messages: bool
    :ivar names_behavior: Speaker name handling.
    :vartype names_behavior: NamesBehavior
    :ivar wrap_in_quotes: Whether user messages are wrapped in quotes.
    :vartype wrap_in_quotes: bool
    :ivar persona_description: User persona description.
    :vartype persona_description: str
    :ivar persona_description_position: Where the persona description goes.
    :vartype persona_description_position: PersonaDescriptionPosition
    :ivar cleanup_policy: Cleanup behavior after history population fails.
    :vartype cleanup_policy: CleanupPolicy
    """

    model_config = ConfigDict(extra="ignore")

    openai_max_context: int = Field(default=DEFAULT_MAX_CONTEXT, ge=1)
    openai_max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, ge=0)
    api_provider: Optional[str] = None
    model: Optional[str] = None
    max_context_unlocked: bool = False
    scenario_format: str = "{{scenario}}"
    personality_format: str = "{{personality}}"
    wi_format: str = "{0}"
    group_nudge_prompt: str = ""
    impersonation_prompt: str = ""
    new_chat_prompt: str = ""
    new_group_chat_prompt: str = ""
    new_example_chat_prompt: str = "{Example Dialogue:}"
    continue_nudge_prompt: str = ""
    continue_prefill: bool = False
    assistant_prefill: str = ""
    squash_system_messages: bool = True
    names_behavior: NamesBehavior = NamesBehavior.DEFAULT
    wrap_in_quotes: bool = False
    persona_description: str = ""
    persona_description_position: PersonaDescriptionPosition = PersonaDescriptionPosition.IN_PROMPT
    cleanup_policy: CleanupPolicy = CleanupPolicy.ALWAYS


class ExtensionPrompt(BaseModel):
    """
    Free-form prompt fragment contributed by an extension.

    :ivar value: Prompt text.
    :vartype value: str
    :ivar position: Placement of the prompt.
    :vartype position: ExtensionPromptType
    :ivar depth: Injection depth.
    :vartype depth: int
    :ivar role: Prompt role.
    :vartype role: str
    :ivar scan: Whether world info scanning should see the prompt.
    :vartype scan: bool
    :ivar filter: Optional synchronous predicate deciding whether the prompt is included.
    :vartype filter: callable or None
    """

    model_config = ConfigDict(extra="ignore")

    value: str = ""
    position: ExtensionPromptType = ExtensionPromptType.IN_PROMPT
    depth: int = Field(default=0, ge=0)
    role: str = "system"
    scan: bool = False
    filter: Optional[Callable[[], Any]] = Field(default=None, exclude=True)

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value: object) -> str:
        return normalize_prompt_role(value)

    @field_validator("position", mode="before")
    @classmethod
    def _parse_position(cls, value: object) -> object:
        if isinstance(value, str) and value.strip().upper() in ExtensionPromptType.__members__:
            return ExtensionPromptType[value.strip().upper()]
        return value


class ChatMessageInput(BaseModel):
    """
    One chat history entry, oldest entries first.

    :ivar role: Message role.
    :vartype role: str
    :ivar content: Message text.
    :vartype content: str
    :ivar name: Optional speaker name.
    :vartype name: str or None
    """

    model_config = ConfigDict(extra="ignore")

    role: str = ""
    content: str = ""
    name: Optional[str] = None


class ExampleMessage(BaseModel):
    """
    One line of an example dialogue.

    :ivar content: Line text.
    :vartype content: str
    :ivar name: Optional speaker name (for example ``example_user``).
    :vartype name: str or None
    """

    model_config = ConfigDict(extra="ignore")

    content: str = ""
    name: Optional[str] = None


class WorldInfoExample(BaseModel):
    """
    Example dialogue contributed by world info.

    :ivar content: Example text.
    :vartype content: str
    :ivar position: ``before`` to prepend to the examples, anything else appends.
    :vartype position: str
    """

    content: str = ""
    position: str = "after"


class WorldInfoResult(BaseModel):
    """
    World info activated for the current chat.
    """

    world_info_before: str = ""
    world_info_after: str = ""
    world_info_examples: list[WorldInfoExample] = Field(default_factory=list)


class PromptInputs(BaseModel):
    """
    Character, chat, and extension content for one prompt preparation.

    :ivar char_name: Character name.
    :vartype char_name: str
    :ivar char_description: Character description.
    :vartype char_description: str
    :ivar char_personality: Character personality.
    :vartype char_personality: str
    :ivar scenario: Scenario text.
    :vartype scenario: str
    :ivar world_info_before: World info placed before the character.
    :vartype world_info_before: str
    :ivar world_info_after: World info placed after the character.
    :vartype world_info_after: str
    :ivar bias: Assistant bias text.
    :vartype bias: str
    :ivar type: Generation type (normal, impersonate, continue, quiet, ...).
    :vartype type: str
    :ivar quiet_prompt: Quiet prompt text.
    :vartype quiet_prompt: str
    :ivar quiet_image: Optional image attached to the quiet prompt.
    :vartype quiet_image: str or None
    :ivar extension_prompts: Extension prompts keyed by extension name.
    :vartype extension_prompts: dict[str, ExtensionPrompt]
    :ivar cycle_prompt: Last prompt used for continuation.
    :vartype cycle_prompt: str
    :ivar system_prompt_override: Character card system prompt.
    :vartype system_prompt_override: str
    :ivar jailbreak_prompt_override: Character card post-history instructions.
    :vartype jailbreak_prompt_override: str
    :ivar messages: Chat history, oldest first.
    :vartype messages: list[ChatMessageInput]
    :ivar message_examples: Example dialogues.
    :vartype message_examples: list[list[ExampleMessage]]
    """

    model_config = ConfigDict(extra="forbid")

    char_name: str = ""
    char_description: str = ""
    char_personality: str = ""
    scenario: str = ""
    world_info_before: str = ""
    world_info_after: str = ""
    bias: str = ""
    type: str = "normal"
    quiet_prompt: str = ""
    quiet_image: Optional[str] = None
    extension_prompts: dict[str, ExtensionPrompt] = Field(default_factory=dict)
    cycle_prompt: str = ""
    system_prompt_override: str = ""
    jailbreak_prompt_override: str = ""
    messages: list[ChatMessageInput] = Field(default_factory=list)
    message_examples: list[list[ExampleMessage]] = Field(default_factory=list)
