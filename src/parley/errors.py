"""
Error types for Parley.
"""

from __future__ import annotations


class PromptAssemblyError(RuntimeError):
    """
    Base class for prompt assembly failures.

    Assembly errors are raised synchronously before the triggering operation mutates any state.

    :param identifier: Identifier of the message, group, or prompt involved.
    :type identifier: str
    """

    def __init__(self, identifier: str, message: str) -> None:
        self.identifier = identifier
        super().__init__(message)


class TokenBudgetExceededError(PromptAssemblyError):
    """
    Adding an item would drive the remaining token budget below zero.

    :param identifier: Identifier of the rejected item.
    :type identifier: str
    """

    def __init__(self, identifier: str) -> None:
        super().__init__(identifier, f"Token budget exceeded for: {identifier}")


class IdentifierNotFoundError(PromptAssemblyError):
    """
    A referenced sub-collection does not exist in the assembled tree.

    This indicates an orchestration-order problem: a collection must be added before anything is
    inserted into it.

    :param identifier: Identifier that could not be resolved.
    :type identifier: str
    """

    def __init__(self, identifier: str) -> None:
        super().__init__(identifier, f"Identifier not found: {identifier}")
