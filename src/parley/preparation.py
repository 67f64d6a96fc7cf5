"""
Preparation of the prompt registry for one chat completion.
"""

from __future__ import annotations

import inspect
import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from .constants import KNOWN_EXTENSION_PROMPTS
from .macros import Substitute, substitute_params
from .models import (
    ExtensionPrompt,
    ExtensionPromptType,
    InjectionPosition,
    PersonaDescriptionPosition,
    PromptInputs,
    PromptSettings,
)
from .registry import Prompt, PromptRegistry

logger = logging.getLogger(__name__)

_POSITIONAL_FIELD = re.compile(r"\{(\d+)\}")
_NON_WORD = re.compile(r"\W", re.ASCII)
_PLACED_EXTENSION_TYPES = (ExtensionPromptType.BEFORE_PROMPT, ExtensionPromptType.IN_PROMPT)
_INHERITED_FIELDS = ("injection_position", "injection_depth", "injection_order")


def string_format(template: str, *args: Any) -> str:
    """
    Replace ``{0}``, ``{1}``, ... with positional arguments.

    Fields without a matching argument are left as they are; other braces are not interpreted.

    :param template: Template text.
    :type template: str
    :param args: Positional values.
    :type args: Any
    :return: Formatted text.
    :rtype: str
    """

    def replace(match: re.Match[str]) -> str:
        index = int(match.group(1))
        return str(args[index]) if index < len(args) else match.group(0)

    return _POSITIONAL_FIELD.sub(replace, template)


def format_world_info(value: Optional[str], wi_format: str = "{0}") -> str:
    """
    Wrap world info text with the configured template.

    :param value: World info text.
    :type value: str or None
    :param wi_format: Template with a ``{0}`` field; blank templates leave the text unchanged.
    :type wi_format: str
    :return: Formatted world info, or an empty string when there is none.
    :rtype: str
    """
    if not value:
        return ""
    template = wi_format or "{0}"
    if not template.strip():
        return value
    return string_format(template, value)


def extension_identifier(key: str) -> str:
    return _NON_WORD.sub("_", key)


def extension_filter_allows(key: str, prompt: ExtensionPrompt) -> bool:
    """
    Evaluate an extension prompt's filter.

    Only synchronous filters are honored. An awaitable result is closed and the prompt skipped; a
    filter that raises is reported and the prompt skipped.

    :param key: Extension prompt key, used in log messages.
    :type key: str
    :param prompt: Extension prompt.
    :type prompt: ExtensionPrompt
    :return: True when the prompt should be included.
    :rtype: bool
    """
    if prompt.filter is None:
        return True
    try:
        result = prompt.filter()
    except Exception as exc:
        logger.warning("Filter for extension prompt %s failed: %s", key, exc)
        return False
    if inspect.isawaitable(result):
        close = getattr(result, "close", None)
        if callable(close):
            close()
        logger.debug("Skipping extension prompt %s with an asynchronous filter", key)
        return False
    return bool(result)


def collect_outlet_prompts(
    extension_prompts: Mapping[str, ExtensionPrompt],
    substitute: Substitute = substitute_params,
    user_name: str = "",
    char_name: str = "",
) -> Dict[str, str]:
    """
    Gather the extension prompts that have no place in the prompt order.

    :param extension_prompts: Extension prompts keyed by name.
    :type extension_prompts: Mapping[str, ExtensionPrompt]
    :param substitute: Macro port.
    :type substitute: callable
    :param user_name: Value of ``{{user}}``.
    :type user_name: str
    :param char_name: Value of ``{{char}}``.
    :type char_name: str
    :return: Substituted outlet text keyed by extension prompt key.
    :rtype: dict[str, str]
    """
    outlets: Dict[str, str] = {}
    for key, prompt in extension_prompts.items():
        if prompt.position != ExtensionPromptType.NONE or not prompt.value:
            continue
        if not extension_filter_allows(key, prompt):
            continue
        outlets[key] = substitute(prompt.value, user_name, char_name)
    return outlets


def _candidate(identifier: str, content: str, role: str = "system", **fields: Any) -> Dict[str, Any]:
    return {"identifier": identifier, "role": role, "content": content, "system_prompt": True, **fields}


def build_system_prompts(
    inputs: PromptInputs,
    settings: PromptSettings,
    substitute: Substitute = substitute_params,
    user_name: str = "",
) -> List[Dict[str, Any]]:
    """
    Build the candidate prompts derived from character, world info and extension inputs.

    :param inputs: Prompt inputs.
    :type inputs: PromptInputs
    :param settings: Prompt settings.
    :type settings: PromptSettings
    :param substitute: Macro port.
    :type substitute: callable
    :param user_name: Value of ``{{user}}``.
    :type user_name: str
    :return: Candidate prompt records in registry order.
    :rtype: list[dict[str, Any]]
    """
    char_name = inputs.char_name
    scenario = inputs.scenario
    if scenario and settings.scenario_format:
        scenario = substitute(
            settings.scenario_format, user_name, char_name, additional={"scenario": scenario}
        )
    personality = inputs.char_personality
    if personality and settings.personality_format:
        personality = substitute(
            settings.personality_format,
            user_name,
            char_name,
            additional={"personality": personality},
        )
    group_nudge = substitute(settings.group_nudge_prompt, user_name, char_name)
    impersonation = (
        substitute(settings.impersonation_prompt, user_name, char_name)
        if settings.impersonation_prompt
        else ""
    )

    candidates = [
        _candidate("worldInfoBefore", format_world_info(inputs.world_info_before, settings.wi_format)),
        _candidate("worldInfoAfter", format_world_info(inputs.world_info_after, settings.wi_format)),
        _candidate("charDescription", inputs.char_description),
        _candidate("charPersonality", personality),
        _candidate("scenario", scenario),
        _candidate("impersonate", impersonation),
        _candidate("quietPrompt", inputs.quiet_prompt),
        _candidate("groupNudge", group_nudge),
        _candidate("bias", inputs.bias, role="assistant"),
    ]

    for key, identifier in (("1_memory", "summary"), ("2_floating_prompt", "authorsNote")):
        extension = inputs.extension_prompts.get(key)
        if extension is not None and extension.value:
            candidates.append(
                _candidate(
                    identifier,
                    extension.value,
                    role=extension.role,
                    injection_position=InjectionPosition.RELATIVE,
                )
            )

    for key, extension in inputs.extension_prompts.items():
        if key in KNOWN_EXTENSION_PROMPTS or not extension.value:
            continue
        if extension.position not in _PLACED_EXTENSION_TYPES:
            continue
        if not extension_filter_allows(key, extension):
            continue
        candidates.append(
            {
                "identifier": extension_identifier(key),
                "role": extension.role,
                "content": extension.value,
                "injection_position": InjectionPosition.RELATIVE,
                "extension": True,
            }
        )

    if (
        settings.persona_description
        and settings.persona_description_position == PersonaDescriptionPosition.IN_PROMPT
    ):
        candidates.append(_candidate("personaDescription", settings.persona_description))
    return candidates


def _apply_override(
    prompts: PromptRegistry, prompt_manager: Any, identifier: str, override: str
) -> None:
    target = prompts.get(identifier)
    if not override or target is None:
        return
    if target.forbid_overrides:
        logger.debug("Prompt %s forbids overrides", identifier)
        return
    if prompt_manager.is_prompt_disabled_for_active_character(identifier):
        logger.debug("Prompt %s is disabled for the active character", identifier)
        return
    original = target.content
    replacement = prompt_manager.prepare_prompt(target.model_copy(update={"content": override}), original)
    prompts.override(replacement, prompts.index(identifier))


def prepare_prompts(
    inputs: PromptInputs,
    prompt_manager: Any,
    settings: Optional[PromptSettings] = None,
    substitute: Substitute = substitute_params,
) -> PromptRegistry:
    """
    Merge character, world info and extension prompts into the manager's prompt registry.

    Each candidate inherits its injection placement from the registry entry it replaces, or is
    appended when there is none. Character card overrides of ``main`` and ``jailbreak`` are applied
    last, unless the prompt forbids overrides or is disabled for the active character.

    Outlet extension prompts never enter the registry.

    :param inputs: Prompt inputs.
    :type inputs: PromptInputs
    :param prompt_manager: Prompt manager.
    :type prompt_manager: parley.manager.PromptManager
    :param settings: Prompt settings; the manager's settings are used when omitted.
    :type settings: PromptSettings or None
    :param substitute: Macro port.
    :type substitute: callable
    :return: Prepared registry.
    :rtype: PromptRegistry
    """
    settings = settings or prompt_manager.service_settings
    prompts = prompt_manager.get_prompt_collection(inputs.type)

    for candidate in build_system_prompts(inputs, settings, substitute, prompt_manager.user_name):
        existing = prompts.get(candidate["identifier"])
        if existing is not None:
            for field in _INHERITED_FIELDS:
                candidate[field] = getattr(existing, field)
            candidate["system_prompt"] = existing.system_prompt
            candidate["marker"] = existing.marker
            candidate["forbid_overrides"] = existing.forbid_overrides
        prepared = prompt_manager.prepare_prompt(Prompt.model_validate(candidate))
        index = prompts.index(prepared.identifier)
        if index >= 0:
            prompts.items[index] = prepared
        else:
            prompts.add(prepared)

    _apply_override(prompts, prompt_manager, "main", inputs.system_prompt_override)
    _apply_override(prompts, prompt_manager, "jailbreak", inputs.jailbreak_prompt_override)
    return prompts
