"""
Minimal placeholder substitution for prompt templates.

This is the default implementation of the macro port. It replaces speaker names, a handful of
formatting markers and caller-supplied macros; it is not a macro language.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

MacroValue = Union[str, int, float, None, Callable[[], object]]
Substitute = Callable[..., str]

_LEGACY_MACROS: Tuple[Tuple[str, str], ...] = (
    ("<USER>", "user"),
    ("<BOT>", "char"),
    ("<CHAR>", "char"),
    ("<CHARIFNOTGROUP>", "charIfNotGroup"),
    ("<GROUP>", "group"),
)
_FORMATTING_MACROS: Tuple[Tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\{\{newline\}\}", re.IGNORECASE), "\n"),
    (re.compile(r"(?:\r?\n)*\{\{trim\}\}(?:\r?\n)*", re.IGNORECASE), ""),
    (re.compile(r"\{\{noop\}\}", re.IGNORECASE), ""),
)


def _macro_text(value: MacroValue) -> str:
    if callable(value):
        value = value()
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _once(value: str) -> Callable[[], str]:
    used = False

    def resolve() -> str:
        nonlocal used
        if used:
            return ""
        used = True
        return value

    return resolve


def build_environment(
    user_name: str = "",
    char_name: str = "",
    original: Optional[str] = None,
    group: Optional[str] = None,
    additional: Optional[Mapping[str, MacroValue]] = None,
    now: Optional[datetime] = None,
) -> Dict[str, MacroValue]:
    """
    Build the macro environment for one substitution.

    :param user_name: User display name.
    :type user_name: str
    :param char_name: Character name.
    :type char_name: str
    :param original: Content replaced by an override, substituted at most once.
    :type original: str or None
    :param group: Comma-separated group member names.
    :type group: str or None
    :param additional: Extra macros; they take precedence over the built-in ones.
    :type additional: Mapping[str, MacroValue] or None
    :param now: Clock value used for the date and time macros.
    :type now: datetime or None
    :return: Macro name to value mapping in substitution order.
    :rtype: dict[str, MacroValue]
    """
    environment: Dict[str, MacroValue] = {}
    if isinstance(original, str) and original:
        environment["original"] = _once(original)
    environment["user"] = user_name or ""
    environment["char"] = char_name or ""
    if group and group.strip():
        environment["charIfNotGroup"] = group
        environment["group"] = group
    else:
        environment["charIfNotGroup"] = char_name or ""
        environment["group"] = ""
    moment = now or datetime.now()
    environment["time"] = moment.strftime("%H:%M")
    environment["date"] = moment.strftime("%Y-%m-%d")
    environment["weekday"] = moment.strftime("%A")
    environment.update(additional or {})
    return environment


def evaluate_macros(content: str, environment: Mapping[str, MacroValue]) -> str:
    """
    Replace legacy markers, formatting markers and ``{{name}}`` macros in order.

    Macro names match case-insensitively.

    :param content: Template text.
    :type content: str
    :param environment: Macro values.
    :type environment: Mapping[str, MacroValue]
    :return: Substituted text.
    :rtype: str
    """
    if not content:
        return ""
    for marker, name in _LEGACY_MACROS:
        pattern = re.compile(re.escape(marker), re.IGNORECASE)
        content = pattern.sub(lambda _match, name=name: _macro_text(environment.get(name)), content)
    for pattern, replacement in _FORMATTING_MACROS:
        content = pattern.sub(replacement, content)
    for name, value in environment.items():
        if not content or "{{" not in content:
            break
        pattern = re.compile(r"\{\{" + re.escape(name) + r"\}\}", re.IGNORECASE)
        try:
            content = pattern.sub(lambda _match, value=value: _macro_text(value), content)
        except Exception as exc:
            logger.warning("Macro substitution failed for %s: %s", name, exc)
    return content


def substitute_params(
    template: Optional[str],
    user_name: str = "",
    char_name: str = "",
    original: Optional[str] = None,
    group: Optional[str] = None,
    additional: Optional[Mapping[str, MacroValue]] = None,
) -> str:
    """
    Substitute names and macros into a prompt template.

    :param template: Template text; empty or None yields an empty string.
    :type template: str or None
    :param user_name: Value of ``{{user}}``.
    :type user_name: str
    :param char_name: Value of ``{{char}}``.
    :type char_name: str
    :param original: Value of ``{{original}}``, substituted at most once.
    :type original: str or None
    :param group: Value of ``{{group}}`` and ``{{charIfNotGroup}}`` in group chats.
    :type group: str or None
    :param additional: Extra macros such as ``{"scenario": ...}`` or ``{"outlet::key": ...}``.
    :type additional: Mapping[str, MacroValue] or None
    :return: Substituted text.
    :rtype: str
    """
    if not template:
        return ""
    environment = build_environment(user_name, char_name, original, group, additional)
    return evaluate_macros(template, environment)


def outlet_macros(outlets: Mapping[str, str]) -> Dict[str, str]:
    """
    Expose outlet texts as ``outlet::<key>`` macros.

    :param outlets: Outlet text keyed by extension prompt key.
    :type outlets: Mapping[str, str]
    :return: Macro mapping.
    :rtype: dict[str, str]
    """
    return {f"outlet::{key}": value for key, value in outlets.items()}
