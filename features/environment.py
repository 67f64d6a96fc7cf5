from __future__ import annotations


def before_scenario(context, scenario) -> None:
    """
    Behave hook executed before each scenario.

    :param context: Behave context object.
    :type context: object
    :param scenario: Behave scenario.
    :type scenario: object
    :return: None.
    :rtype: None
    """
    context.assembler = None
    context.token_counter = None
    context.messages = []
    context.extension_prompts = {}
    context.prompt_manager = None
    context.prompts = None
    context.orchestrator = None
    context.chat = None
    context.last_error = None

