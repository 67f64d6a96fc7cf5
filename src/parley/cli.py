"""
Command-line interface for Parley.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from .characters import CharacterCard
from .configuration import (
    load_configuration_view,
    load_prompt_inputs,
    load_settings,
    parse_dotted_overrides,
)
from .errors import PromptAssemblyError
from .limits import max_context_for_model
from .manager import PromptManager
from .orchestrator import PromptOrchestrator
from .tokens import TiktokenCounter, TokenCounter, TokenHandler, estimate_tokens


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _token_counter(arguments: argparse.Namespace) -> TokenCounter:
    if getattr(arguments, "tiktoken", False):
        return TiktokenCounter(arguments.encoding)
    return estimate_tokens


def cmd_assemble(arguments: argparse.Namespace) -> int:
    """
    Assemble chat completion messages from an inputs file.

    :param arguments: Parsed command-line interface arguments.
    :type arguments: argparse.Namespace
    :return: Exit code.
    :rtype: int
    """
    _configure_logging(arguments.verbose)
    overrides = parse_dotted_overrides(arguments.override)
    settings = load_settings(arguments.configuration or [], overrides)
    inputs = load_prompt_inputs(arguments.inputs)
    counter = _token_counter(arguments)

    manager = PromptManager(
        settings,
        user_name=arguments.user,
        char_name=arguments.char or inputs.char_name,
        token_handler=TokenHandler(counter),
    )
    orchestrator = PromptOrchestrator(manager, settings, token_counter=counter)

    if arguments.character:
        card = CharacterCard.model_validate(
            load_configuration_view([arguments.character], configuration_label="Character file")
        )
        messages, counts = asyncio.run(
            orchestrator.prepare_messages_from_character(
                card, inputs, dry_run=arguments.dry_run, char_name=arguments.char
            )
        )
    else:
        messages, counts = asyncio.run(
            orchestrator.prepare_messages(inputs, dry_run=arguments.dry_run)
        )

    print(json.dumps({"messages": messages, "token_counts": counts}, indent=2, ensure_ascii=False))
    return 0


def cmd_limits(arguments: argparse.Namespace) -> int:
    """
    Print the context ceiling of a model.

    :param arguments: Parsed command-line interface arguments.
    :type arguments: argparse.Namespace
    :return: Exit code.
    :rtype: int
    """
    ceiling = max_context_for_model(arguments.model, arguments.provider, arguments.unlocked)
    print(
        json.dumps(
            {"model": arguments.model, "provider": arguments.provider, "max_context": ceiling},
            indent=2,
        )
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    """
    Build the command-line interface argument parser.

    :return: Argument parser instance.
    :rtype: argparse.ArgumentParser
    """
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Assemble token-budgeted chat completion prompts.",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_assemble = sub.add_parser("assemble", help="Assemble chat messages from an inputs file.")
    p_assemble.add_argument(
        "--inputs", required=True, help="Path to a YAML or JSON prompt inputs file."
    )
    p_assemble.add_argument(
        "--configuration",
        default=None,
        action="append",
        help="Path to a YAML settings file (repeatable). Files are composed in precedence order.",
    )
    p_assemble.add_argument(
        "--override",
        "--config",
        action="append",
        default=None,
        help="Settings override as key=value (repeatable).",
    )
    p_assemble.add_argument(
        "--character", default=None, help="Optional character card file (YAML or JSON)."
    )
    p_assemble.add_argument("--user", default="User", help="User display name.")
    p_assemble.add_argument(
        "--char", default="", help="Character name (defaults to the inputs or card name)."
    )
    p_assemble.add_argument(
        "--dry-run", action="store_true", help="Count tokens without squashing or rendering."
    )
    p_assemble.add_argument(
        "--tiktoken",
        action="store_true",
        help="Count tokens with tiktoken instead of the built-in estimate.",
    )
    p_assemble.add_argument(
        "--encoding", default="cl100k_base", help="Tiktoken encoding (with --tiktoken)."
    )
    p_assemble.add_argument("--verbose", action="store_true", help="Log assembly steps.")
    p_assemble.set_defaults(func=cmd_assemble)

    p_limits = sub.add_parser("limits", help="Show the context ceiling of a model.")
    p_limits.add_argument("--model", required=True, help="Model identifier.")
    p_limits.add_argument("--provider", required=True, help="Provider identifier.")
    p_limits.add_argument(
        "--unlocked", action="store_true", help="Report the unlocked context ceiling."
    )
    p_limits.set_defaults(func=cmd_limits)

    return parser


def main(argument_list: Optional[List[str]] = None) -> int:
    """
    Entry point for the Parley command-line interface.

    :param argument_list: Optional command-line interface arguments.
    :type argument_list: list[str] or None
    :return: Exit code.
    :rtype: int
    """
    parser = build_parser()
    arguments = parser.parse_args(argument_list)
    try:
        return int(arguments.func(arguments))
    except (
        FileNotFoundError,
        ValueError,
        ValidationError,
        PromptAssemblyError,
    ) as exception:
        message = exception.args[0] if getattr(exception, "args", None) else str(exception)
        print(str(message), file=sys.stderr)
        return 2
