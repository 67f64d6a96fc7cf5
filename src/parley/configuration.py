"""
Configuration loading utilities for Parley.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .models import PromptInputs, PromptSettings


def _merge(base: Dict[str, Any], layer: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in layer.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_override_value(raw: str) -> object:
    """
    Read one override value as a YAML scalar or flow collection.

    ``8192`` becomes an int, ``false`` a bool, ``null`` None and ``{a: 1}`` a mapping. Text that
    YAML cannot read is kept as given.

    :param raw: Text after the ``=`` of a ``key=value`` pair.
    :type raw: str
    :return: Parsed value.
    :rtype: object
    """
    text = str(raw).strip()
    if not text:
        return ""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_dotted_overrides(pairs: Optional[List[str]]) -> Dict[str, object]:
    """
    Collect repeated ``--config key=value`` flags into a mapping of dotted keys.

    :param pairs: Flag values in command-line order; later keys win.
    :type pairs: list[str] or None
    :return: Dotted key to parsed value.
    :rtype: dict[str, object]
    :raises ValueError: If a flag is not ``key=value`` or its key is blank.
    """
    overrides: Dict[str, object] = {}
    for pair in pairs or []:
        key, separator, raw = pair.partition("=")
        if not separator:
            raise ValueError(f"Config values must be key=value (got {pair!r})")
        if not key.strip():
            raise ValueError("Config keys must be non-empty")
        overrides[key.strip()] = parse_override_value(raw)
    return overrides


def _nest(dotted_key: str, value: object) -> Dict[str, object]:
    parts = [part.strip() for part in dotted_key.split(".") if part.strip()]
    if not parts:
        raise ValueError("Override keys must be non-empty")
    layer: Dict[str, object] = {parts[-1]: value}
    for part in reversed(parts[:-1]):
        layer = {part: layer}
    return layer


def apply_dotted_overrides(
    config: Dict[str, object], overrides: Mapping[str, object]
) -> Dict[str, object]:
    """
    Layer dotted overrides on top of a settings view, the same way a later file would be.

    :param config: Settings view; left unchanged.
    :type config: dict[str, object]
    :param overrides: Dotted key overrides.
    :type overrides: Mapping[str, object]
    :return: New view with the overrides applied.
    :rtype: dict[str, object]
    """
    view: Dict[str, Any] = dict(config)
    for key, value in overrides.items():
        view = _merge(view, _nest(key, value))
    return view


def load_configuration_view(
    configuration_paths: Iterable[str],
    *,
    configuration_label: str = "Configuration",
) -> Dict[str, object]:
    """
    Load a composed configuration view from one or more YAML files.

    Later files win; nested mappings are merged key by key.

    :param configuration_paths: Iterable of configuration file paths in precedence order.
    :type configuration_paths: Iterable[str]
    :param configuration_label: Label used in error messages (for example: "Settings file").
    :type configuration_label: str
    :return: Composed configuration view.
    :rtype: dict[str, object]
    :raises FileNotFoundError: If any configuration file is missing.
    :raises ValueError: If any configuration file is not a mapping/object.
    """
    view: Dict[str, Any] = {}
    for raw in configuration_paths:
        candidate = Path(raw)
        if not candidate.is_file():
            raise FileNotFoundError(f"{configuration_label} not found: {candidate}")
        with open(candidate, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
        if data is None:
            continue
        if not isinstance(data, dict):
            raise ValueError(f"{configuration_label} must be a mapping/object: {candidate}")
        view = _merge(view, data)
    return view


def load_settings(
    configuration_paths: Iterable[str] = (),
    overrides: Optional[Mapping[str, object]] = None,
) -> PromptSettings:
    """
    Load prompt settings from YAML files and dotted overrides.

    :param configuration_paths: Settings files in precedence order.
    :type configuration_paths: Iterable[str]
    :param overrides: Dotted key overrides applied last.
    :type overrides: Mapping[str, object] or None
    :return: Validated settings.
    :rtype: PromptSettings
    :raises pydantic.ValidationError: If a value has the wrong type.
    """
    view = load_configuration_view(configuration_paths, configuration_label="Settings file")
    if overrides:
        view = apply_dotted_overrides(view, overrides)
    return PromptSettings.model_validate(view)


def load_prompt_inputs(path: str) -> PromptInputs:
    """
    Load prompt inputs from a YAML or JSON file.

    :param path: Inputs file path.
    :type path: str
    :return: Validated inputs.
    :rtype: PromptInputs
    :raises pydantic.ValidationError: If the inputs contain unknown or malformed fields.
    """
    view = load_configuration_view([path], configuration_label="Inputs file")
    return PromptInputs.model_validate(view)
