"""
Shared constants for Parley.
"""

ROOT_IDENTIFIER = "root"
CHAT_HISTORY_IDENTIFIER = "chatHistory"
DIALOGUE_EXAMPLES_IDENTIFIER = "dialogueExamples"
CONTROL_PROMPTS_IDENTIFIER = "controlPrompts"

TOKENS_PER_IMAGE = 85
TOKENS_PER_VIDEO = 10000
ASSISTANT_PRIMING_TOKENS = 3

SQUASH_EXCLUDED_IDENTIFIERS = ("newMainChat", "newChat", "groupNudge")

DEFAULT_INJECTION_DEPTH = 4
DEFAULT_INJECTION_ORDER = 100
DEFAULT_MAX_CONTEXT = 4095
DEFAULT_MAX_TOKENS = 300
UNLOCKED_MAX_CONTEXT = 2_000_000

KNOWN_EXTENSION_PROMPTS = (
    "1_memory",
    "2_floating_prompt",
    "3_vectors",
    "4_vectors_databank",
    "5_smartcontext",
    "6_chromadb",
    "DEPTH_PROMPT",
)

MARKER_ORDER = (
    "worldInfoBefore",
    "main",
    "worldInfoAfter",
    "charDescription",
    "charPersonality",
    "scenario",
    "personaDescription",
)

DEFAULT_PROMPT_IDENTIFIERS = (
    "main",
    "nsfw",
    "jailbreak",
    "worldInfoBefore",
    "worldInfoAfter",
    "charDescription",
    "charPersonality",
    "scenario",
    "personaDescription",
    "enhanceDefinitions",
    "dialogueExamples",
    "chatHistory",
    "impersonate",
    "quietPrompt",
    "groupNudge",
    "bias",
)
