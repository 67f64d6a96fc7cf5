"""
Character cards and the prompt data derived from them.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import ExampleMessage

EXAMPLE_BLOCK_MARKER = "<START>"
EXAMPLE_USER_NAME = "example_user"
EXAMPLE_ASSISTANT_NAME = "example_assistant"

_USER_PREFIXES = ("{{user}}:", "<user>:")
_CHAR_PREFIXES = ("{{char}}:", "<bot>:", "<char>:")


class CharacterCard(BaseModel):
    """
    Character definition as stored on a character card.

    Cards in the nested ``data`` layout are flattened on load; fields inside ``data`` win over the
    top-level ones.

    :ivar id: Character identifier used to look up per-character prompt order.
    :vartype id: str or None
    :ivar name: Character name.
    :vartype name: str
    :ivar description: Character description.
    :vartype description: str
    :ivar personality: Character personality summary.
    :vartype personality: str
    :ivar scenario: Scenario text.
    :vartype scenario: str
    :ivar mes_example: Example dialogues separated by ``<START>``.
    :vartype mes_example: str
    :ivar first_mes: Greeting message.
    :vartype first_mes: str
    :ivar system_prompt: Card-supplied system prompt override.
    :vartype system_prompt: str
    :ivar post_history_instructions: Card-supplied jailbreak override.
    :vartype post_history_instructions: str
    :ivar creator_notes: Notes from the card author.
    :vartype creator_notes: str
    :ivar character_version: Card version string.
    :vartype character_version: str
    :ivar depth_prompt: Card-supplied in-chat prompt.
    :vartype depth_prompt: str
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    mes_example: str = ""
    first_mes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    creator_notes: str = ""
    character_version: str = ""
    depth_prompt: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flatten_card(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        flattened: Dict[str, Any] = {key: value for key, value in data.items() if key != "data"}
        nested = data.get("data")
        if isinstance(nested, Mapping):
            for key, value in nested.items():
                if value not in (None, ""):
                    flattened[key] = value
            extensions = nested.get("extensions")
            if isinstance(extensions, Mapping):
                depth_prompt = extensions.get("depth_prompt")
                if isinstance(depth_prompt, Mapping):
                    flattened["depth_prompt"] = depth_prompt.get("prompt") or ""
        if not flattened.get("creator_notes") and data.get("creatorcomment"):
            flattened["creator_notes"] = data["creatorcomment"]
        if flattened.get("id") is not None:
            flattened["id"] = str(flattened["id"])
        return flattened


class CharacterPromptData(BaseModel):
    """
    Character fields ready to be merged into :class:`parley.models.PromptInputs`.
    """

    char_name: str = ""
    char_description: str = ""
    char_personality: str = ""
    scenario: str = ""
    system_prompt_override: str = ""
    jailbreak_prompt_override: str = ""
    message_examples: List[List[ExampleMessage]] = Field(default_factory=list)
    first_message: str = ""

    def input_fields(self) -> Dict[str, Any]:
        """
        Return the fields that :class:`parley.models.PromptInputs` accepts.

        Values are the model's own attributes, so example dialogues stay
        :class:`parley.models.ExampleMessage` instances.

        :return: Field mapping without the greeting.
        :rtype: dict[str, Any]
        """
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if name != "first_message"
        }


def clean_card_text(value: Optional[str]) -> str:
    """
    Strip carriage returns and surrounding whitespace from card text.

    :param value: Raw card text.
    :type value: str or None
    :return: Cleaned text.
    :rtype: str
    """
    if not value:
        return ""
    return value.replace("\r", "").strip()


def parse_example_dialogues(examples: Optional[str]) -> List[str]:
    """
    Split example dialogue text into blocks on ``<START>`` markers.

    :param examples: Example dialogue text.
    :type examples: str or None
    :return: Blocks, each trimmed and ending with a newline.
    :rtype: list[str]
    """
    if not examples or examples == EXAMPLE_BLOCK_MARKER:
        return []
    if not examples.startswith(EXAMPLE_BLOCK_MARKER):
        examples = f"{EXAMPLE_BLOCK_MARKER}\n{examples.strip()}"
    blocks = re.split(re.escape(EXAMPLE_BLOCK_MARKER), examples, flags=re.IGNORECASE)[1:]
    return [f"{block.strip()}\n" for block in blocks]


def _speaker(line: str, user_prefixes: List[str], char_prefixes: List[str]) -> Optional[tuple]:
    lowered = line.lower()
    for prefix in user_prefixes:
        if lowered.startswith(prefix.lower()):
            return EXAMPLE_USER_NAME, line[len(prefix) :].strip()
    for prefix in char_prefixes:
        if lowered.startswith(prefix.lower()):
            return EXAMPLE_ASSISTANT_NAME, line[len(prefix) :].strip()
    return None


def split_example_block(
    block: str, user_name: str = "", char_name: str = ""
) -> List[ExampleMessage]:
    """
    Split one example block into speaker turns.

    A line starting with a user or character prefix opens a new turn; other lines continue the
    current one. Text before the first prefixed line becomes an unnamed turn.

    :param block: Example block text.
    :type block: str
    :param user_name: User display name accepted as a prefix.
    :type user_name: str
    :param char_name: Character name accepted as a prefix.
    :type char_name: str
    :return: Example messages.
    :rtype: list[ExampleMessage]
    """
    user_prefixes = list(_USER_PREFIXES) + ([f"{user_name}:"] if user_name else [])
    char_prefixes = list(_CHAR_PREFIXES) + ([f"{char_name}:"] if char_name else [])
    turns: List[ExampleMessage] = []
    speaker: Optional[str] = None
    lines: List[str] = []

    def flush() -> None:
        content = "\n".join(lines).strip()
        if content:
            turns.append(ExampleMessage(content=content, name=speaker))

    for line in block.splitlines():
        matched = _speaker(line, user_prefixes, char_prefixes)
        if matched is None:
            lines.append(line)
            continue
        flush()
        speaker, first_line = matched
        lines = [first_line]
    flush()
    return turns


def prepare_character_prompt_data(
    character: CharacterCard,
    chat_metadata: Optional[Mapping[str, Any]] = None,
    user_name: str = "",
    char_name: str = "",
) -> CharacterPromptData:
    """
    Derive prompt inputs from a character card.

    Chat metadata may override the scenario, the example dialogues and the system prompt.

    :param character: Character card.
    :type character: CharacterCard
    :param chat_metadata: Per-chat overrides.
    :type chat_metadata: Mapping[str, Any] or None
    :param user_name: User display name.
    :type user_name: str
    :param char_name: Character name; the card name is used when empty.
    :type char_name: str
    :return: Character prompt data.
    :rtype: CharacterPromptData
    """
    metadata = chat_metadata or {}
    name = char_name or character.name
    scenario = metadata.get("scenario") or character.scenario
    examples = clean_card_text(metadata.get("mes_example") or character.mes_example)
    system_prompt = metadata.get("system_prompt") or character.system_prompt
    return CharacterPromptData(
        char_name=name,
        char_description=clean_card_text(character.description),
        char_personality=clean_card_text(character.personality),
        scenario=clean_card_text(scenario),
        system_prompt_override=clean_card_text(system_prompt),
        jailbreak_prompt_override=clean_card_text(character.post_history_instructions),
        message_examples=[
            split_example_block(block, user_name, name) for block in parse_example_dialogues(examples)
        ],
        first_message=character.first_mes,
    )
