"""
Character card tests.
"""

from __future__ import annotations

from parley.characters import (
    CharacterCard,
    clean_card_text,
    parse_example_dialogues,
    prepare_character_prompt_data,
    split_example_block,
)
from parley.models import ExampleMessage


def test_card_flattens_nested_data():
    """
    Fields inside ``data`` win over top-level ones and extensions are lifted.
    """
    card = CharacterCard.model_validate(
        {
            "id": 7,
            "name": "Old name",
            "creatorcomment": "Legacy notes",
            "data": {
                "name": "Seraphina",
                "description": "A guardian.",
                "system_prompt": "",
                "extensions": {"depth_prompt": {"prompt": "Stay in character.", "depth": 4}},
            },
        }
    )
    assert card.id == "7"
    assert card.name == "Seraphina"
    assert card.description == "A guardian."
    assert card.depth_prompt == "Stay in character."
    assert card.creator_notes == "Legacy notes"


def test_clean_card_text():
    """
    Carriage returns and surrounding whitespace are removed.
    """
    assert clean_card_text("  a\r\nb  ") == "a\nb"
    assert clean_card_text(None) == ""


def test_parse_example_dialogues_splits_blocks():
    """
    Blocks are split on the start marker, trimmed and newline-terminated.
    """
    text = "<START>\n{{user}}: Hi\n{{char}}: Hello\n<START>\n{{user}}: Bye\n"
    assert parse_example_dialogues(text) == [
        "{{user}}: Hi\n{{char}}: Hello\n",
        "{{user}}: Bye\n",
    ]
    assert parse_example_dialogues("{{user}}: Hi") == ["{{user}}: Hi\n"]
    assert parse_example_dialogues("<START>") == []
    assert parse_example_dialogues("") == []


def test_split_example_block_assigns_speakers():
    """
    Prefixed lines open turns; unprefixed lines continue them.
    """
    block = "{{user}}: Hi there\nAlice: Still me\n{{char}}: Hello\nand more\n"
    turns = split_example_block(block, "Alice", "Seraphina")
    assert [(turn.name, turn.content) for turn in turns] == [
        ("example_user", "Hi there"),
        ("example_user", "Still me"),
        ("example_assistant", "Hello\nand more"),
    ]


def test_split_example_block_keeps_leading_narration():
    """
    Text before the first speaker becomes an unnamed turn.
    """
    turns = split_example_block("A quiet morning.\n<bot>: Good day.\n")
    assert [(turn.name, turn.content) for turn in turns] == [
        (None, "A quiet morning."),
        ("example_assistant", "Good day."),
    ]


def test_prepare_character_prompt_data_applies_metadata():
    """
    Chat metadata overrides the scenario, examples and system prompt.
    """
    card = CharacterCard(
        name="Seraphina",
        description=" Guardian \r\n",
        personality="Kind",
        scenario="Forest",
        mes_example="<START>\n{{user}}: Hi\n{{char}}: Hello",
        system_prompt="Card main",
        post_history_instructions="Card jailbreak",
        first_mes="Welcome!",
    )
    data = prepare_character_prompt_data(
        card, {"scenario": "Castle", "system_prompt": "Chat main"}, "Alice"
    )
    assert data.char_name == "Seraphina"
    assert data.char_description == "Guardian"
    assert data.scenario == "Castle"
    assert data.system_prompt_override == "Chat main"
    assert data.jailbreak_prompt_override == "Card jailbreak"
    assert [[turn.name for turn in block] for block in data.message_examples] == [
        ["example_user", "example_assistant"]
    ]
    assert data.first_message == "Welcome!"
    assert "first_message" not in data.input_fields()
    fields = data.input_fields()
    assert all(
        isinstance(turn, ExampleMessage) for block in fields["message_examples"] for turn in block
    )
