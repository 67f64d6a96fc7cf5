"""
Ordered, identifier-indexed registry of prompt definitions.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import DEFAULT_INJECTION_DEPTH, DEFAULT_INJECTION_ORDER
from .models import InjectionPosition, normalize_prompt_role


class Prompt(BaseModel):
    """
    Prompt template awaiting preparation into a message.

    Prompts are not priced; they become :class:`parley.messages.Message` values during population.

    :ivar identifier: Unique identifier within a registry.
    :vartype identifier: str
    :ivar name: Human-readable name.
    :vartype name: str
    :ivar role: Prompt role.
    :vartype role: str
    :ivar content: Prompt text.
    :vartype content: str
    :ivar injection_position: Relative (ordered list) or absolute (in-chat) placement.
    :vartype injection_position: InjectionPosition
    :ivar injection_depth: Depth used by in-chat placement.
    :vartype injection_depth: int
    :ivar injection_order: Ordering hint among prompts at the same depth.
    :vartype injection_order: int
    :ivar injection_trigger: Generation types that activate the prompt; empty means all.
    :vartype injection_trigger: list[str]
    :ivar system_prompt: Whether the prompt is a built-in system prompt.
    :vartype system_prompt: bool
    :ivar marker: Whether the prompt is a placeholder filled during population.
    :vartype marker: bool
    :ivar forbid_overrides: Whether character cards may replace the content.
    :vartype forbid_overrides: bool
    :ivar extension: Whether the prompt came from an extension.
    :vartype extension: bool
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    identifier: str = ""
    name: str = ""
    role: str = "system"
    content: str = ""
    injection_position: InjectionPosition = InjectionPosition.RELATIVE
    injection_depth: int = DEFAULT_INJECTION_DEPTH
    injection_order: int = DEFAULT_INJECTION_ORDER
    injection_trigger: List[str] = Field(default_factory=list)
    system_prompt: bool = False
    marker: bool = False
    forbid_overrides: bool = False
    extension: bool = False

    @field_validator("role", mode="before")
    @classmethod
    def _parse_role(cls, value: object) -> str:
        return normalize_prompt_role(value)

    @field_validator("content", "name", "identifier", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("injection_trigger", mode="before")
    @classmethod
    def _parse_trigger(cls, value: object) -> object:
        return value if isinstance(value, list) else []

    @field_validator("injection_position", mode="before")
    @classmethod
    def _parse_position(cls, value: object) -> object:
        if value in (InjectionPosition.RELATIVE, InjectionPosition.ABSOLUTE):
            return value
        return InjectionPosition.RELATIVE

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "Prompt":
        return cls.model_validate(dict(data))

    def clone(self) -> "Prompt":
        return self.model_copy(deep=True)


def _require_prompt(prompt: object) -> None:
    if not isinstance(prompt, Prompt):
        raise TypeError("Only Prompt instances can be added to PromptRegistry")


class PromptRegistry:
    """
    Ordered registry of prompts with identifier lookup and override tracking.

    Lookups are linear; registries hold tens of entries.

    :param prompts: Optional initial prompts.
    :type prompts: Iterable[Prompt] or None
    """

    def __init__(self, prompts: Optional[Iterable[Prompt]] = None) -> None:
        self.items: List[Prompt] = []
        self.overridden_prompts: List[str] = []
        for prompt in prompts or []:
            self.add(prompt)

    def __iter__(self) -> Iterator[Prompt]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def __contains__(self, identifier: object) -> bool:
        return isinstance(identifier, str) and self.has(identifier)

    @property
    def collection(self) -> List[Prompt]:
        return self.items

    def add(self, prompt: Prompt) -> None:
        _require_prompt(prompt)
        self.items.append(prompt)

    def insert_at(self, index: int, prompt: Prompt) -> None:
        _require_prompt(prompt)
        self.items.insert(index, prompt)

    def get_by_identifier(self, identifier: str) -> Optional[Prompt]:
        return next((prompt for prompt in self.items if prompt.identifier == identifier), None)

    def get_index_by_identifier(self, identifier: str) -> int:
        for index, prompt in enumerate(self.items):
            if prompt.identifier == identifier:
                return index
        return -1

    get = get_by_identifier
    index = get_index_by_identifier

    def has(self, identifier: str) -> bool:
        return self.get_index_by_identifier(identifier) >= 0

    def remove_by_identifier(self, identifier: str) -> bool:
        index = self.get_index_by_identifier(identifier)
        if index < 0:
            return False
        del self.items[index]
        return True

    def set(self, prompt: Prompt, position: int) -> None:
        """
        Write a prompt at an absolute position, replacing whatever is there.

        :param prompt: Prompt to write.
        :type prompt: Prompt
        :param position: Target index; indexes at or beyond the end append.
        :type position: int
        :return: None.
        :rtype: None
        :raises TypeError: If ``prompt`` is not a :class:`Prompt`.
        :raises IndexError: If ``position`` is negative.
        """
        _require_prompt(prompt)
        if position < 0:
            raise IndexError(f"Prompt position must be non-negative (got {position})")
        if position >= len(self.items):
            self.items.append(prompt)
            return
        self.items[position] = prompt

    def override(self, prompt: Prompt, position: int) -> None:
        """
        Replace the prompt at ``position`` and remember that it was overridden.

        :param prompt: Replacement prompt.
        :type prompt: Prompt
        :param position: Target index.
        :type position: int
        :return: None.
        :rtype: None
        """
        self.set(prompt, position)
        if prompt.identifier not in self.overridden_prompts:
            self.overridden_prompts.append(prompt.identifier)

    def update_by_identifier(
        self, identifier: str, prompt_or_data: Union[Prompt, Mapping[str, Any]]
    ) -> bool:
        """
        Replace a prompt or update some of its fields.

        :param identifier: Identifier of the prompt to update.
        :type identifier: str
        :param prompt_or_data: Replacement prompt or mapping of field updates.
        :type prompt_or_data: Prompt or Mapping[str, Any]
        :return: True when the prompt was found.
        :rtype: bool
        """
        index = self.get_index_by_identifier(identifier)
        if index < 0:
            return False
        if isinstance(prompt_or_data, Prompt):
            self.items[index] = prompt_or_data
        else:
            merged = {**self.items[index].model_dump(), **dict(prompt_or_data)}
            self.items[index] = Prompt.model_validate(merged)
        return True

    def get_all(self) -> List[Prompt]:
        return list(self.items)

    def size(self) -> int:
        return len(self.items)

    def clear(self) -> None:
        self.items = []

    def to_json(self) -> List[dict[str, Any]]:
        return [prompt.to_json() for prompt in self.items]

    def load_json(self, records: Iterable[Mapping[str, Any]]) -> None:
        self.items = [Prompt.from_json(record) for record in records]

    @classmethod
    def from_json(cls, records: Iterable[Mapping[str, Any]]) -> "PromptRegistry":
        """
        Build a registry from plain prompt records.

        :param records: Records produced by :meth:`to_json`.
        :type records: Iterable[Mapping[str, Any]]
        :return: New registry.
        :rtype: PromptRegistry
        """
        registry = cls()
        registry.load_json(records)
        return registry

    def clone(self) -> "PromptRegistry":
        """
        Deep-copy the registry so edits do not reach the original.

        :return: Independent copy, including the overridden identifiers.
        :rtype: PromptRegistry
        """
        registry = PromptRegistry(prompt.clone() for prompt in self.items)
        registry.overridden_prompts = list(self.overridden_prompts)
        return registry
