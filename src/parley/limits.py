"""
Model and provider context-window ceilings.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence, Tuple

from .constants import DEFAULT_MAX_CONTEXT, UNLOCKED_MAX_CONTEXT

ModelRule = Tuple[Callable[[str], bool], int]

OPENAI_COMPATIBLE_PROVIDERS = ("openai", "custom", "azure_openai")
GOOGLE_PROVIDERS = ("vertexai", "makersuite")


def _starts_with(*prefixes: str) -> Callable[[str], bool]:
    return lambda model: model.startswith(prefixes)


def _contains(*fragments: str) -> Callable[[str], bool]:
    return lambda model: any(fragment in model for fragment in fragments)


def _one_of(*names: str) -> Callable[[str], bool]:
    return lambda model: model in names


_OPENAI_RULES: Sequence[ModelRule] = (
    (_starts_with("gpt-5"), 400_000),
    (_contains("gpt-4.1"), 1_000_000),
    (_starts_with("o1"), 128_000),
    (_starts_with("o3", "o4"), 200_000),
    (
        _contains(
            "chatgpt-4o-latest",
            "gpt-4-turbo",
            "gpt-4o",
            "gpt-4-1106",
            "gpt-4-0125",
            "gpt-4-vision",
        ),
        128_000,
    ),
    (_contains("gpt-3.5-turbo-1106"), 16_000),
    (_one_of("gpt-4", "gpt-4-0314", "gpt-4-0613"), 8_000),
    (_one_of("gpt-4-32k", "gpt-4-32k-0314", "gpt-4-32k-0613"), 32_000),
    (_one_of("gpt-3.5-turbo-16k", "gpt-3.5-turbo-16k-0613"), 16_000),
    (_one_of("code-davinci-002"), 8_000),
    (_one_of("text-curie-001", "text-babbage-001", "text-ada-001"), 2_000),
)

_GOOGLE_RULES: Sequence[ModelRule] = (
    (_contains("gemini-2.5-flash-image"), 32_000),
    (
        _contains(
            "gemini-2.0-flash",
            "gemini-2.0-pro",
            "gemini-exp",
            "gemini-2.5-flash",
            "gemini-2.5-pro",
            "learnlm-2.0-flash",
            "gemini-robotics",
        ),
        1_000_000,
    ),
    (_contains("gemma-3-27b-it"), 128_000),
    (_contains("gemma-3n-e4b-it"), 8_000),
    (_contains("gemma-3"), 32_000),
)

_PROVIDER_CEILINGS = {
    "mistralai": 32_000,
    "groq": 128_000,
}


def _first_match(rules: Sequence[ModelRule], model: str, default: int) -> int:
    for matches, ceiling in rules:
        if matches(model):
            return ceiling
    return default


def max_context_for_model(
    model: Optional[str], api_provider: Optional[str], unlocked: bool = False
) -> int:
    """
    Return the largest context window a model accepts.

    Rules are checked in order and the first match wins, so more specific model names must come
    before the families that contain them.

    :param model: Model identifier.
    :type model: str or None
    :param api_provider: Provider identifier such as ``openai`` or ``vertexai``.
    :type api_provider: str or None
    :param unlocked: Whether the user lifted the ceiling.
    :type unlocked: bool
    :return: Context ceiling in tokens.
    :rtype: int
    """
    if unlocked:
        return UNLOCKED_MAX_CONTEXT
    name = model or ""
    if api_provider in OPENAI_COMPATIBLE_PROVIDERS:
        return _first_match(_OPENAI_RULES, name, DEFAULT_MAX_CONTEXT)
    if api_provider in GOOGLE_PROVIDERS:
        return _first_match(_GOOGLE_RULES, name, 32_000)
    return _PROVIDER_CEILINGS.get(api_provider or "", DEFAULT_MAX_CONTEXT)
