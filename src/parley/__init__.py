"""
Parley public package interface.
"""

from .assembler import BudgetAssembler
from .characters import CharacterCard, prepare_character_prompt_data
from .errors import IdentifierNotFoundError, PromptAssemblyError, TokenBudgetExceededError
from .macros import substitute_params
from .manager import PromptManager
from .messages import Message, MessageGroup, squash_system_messages
from .models import (
    ChatMessageInput,
    CleanupPolicy,
    ExampleMessage,
    ExtensionPrompt,
    ExtensionPromptType,
    InjectionPosition,
    NamesBehavior,
    PromptInputs,
    PromptSettings,
    WorldInfoResult,
)
from .orchestrator import PromptOrchestrator
from .population import populate_chat_completion
from .preparation import prepare_prompts
from .registry import Prompt, PromptRegistry
from .tokens import TiktokenCounter, TokenHandler, estimate_tokens, try_count_tokens

__all__ = [
    "__version__",
    "BudgetAssembler",
    "CharacterCard",
    "ChatMessageInput",
    "CleanupPolicy",
    "ExampleMessage",
    "ExtensionPrompt",
    "ExtensionPromptType",
    "IdentifierNotFoundError",
    "InjectionPosition",
    "Message",
    "MessageGroup",
    "NamesBehavior",
    "Prompt",
    "PromptAssemblyError",
    "PromptInputs",
    "PromptManager",
    "PromptOrchestrator",
    "PromptRegistry",
    "PromptSettings",
    "TiktokenCounter",
    "TokenBudgetExceededError",
    "TokenHandler",
    "WorldInfoResult",
    "estimate_tokens",
    "populate_chat_completion",
    "prepare_character_prompt_data",
    "prepare_prompts",
    "squash_system_messages",
    "substitute_params",
    "try_count_tokens",
]

__version__ = "0.1.0"
