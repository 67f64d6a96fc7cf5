from __future__ import annotations

import asyncio
import json

from behave import given, then, when

from parley.assembler import BudgetAssembler
from parley.errors import TokenBudgetExceededError
from parley.manager import PromptManager
from parley.messages import Message, MessageGroup, squash_system_messages
from parley.models import ChatMessageInput, ExtensionPrompt, ExtensionPromptType, PromptInputs
from parley.orchestrator import PromptOrchestrator, apply_names_to_content
from parley.preparation import prepare_prompts


def _unescape(value: str) -> str:
    return value.replace("\\n", "\n")


def _inputs(context) -> PromptInputs:
    return PromptInputs(
        char_name=context.prompt_manager.char_name,
        messages=[ChatMessageInput(role="user", content="Hi")],
        extension_prompts=context.extension_prompts,
    )


@given("an assembler with a token budget of {budget:d}")
def step_assembler_with_budget(context, budget):
    context.assembler = BudgetAssembler()
    context.assembler.set_token_budget(budget, 0)


@given('an empty group "{identifier}"')
def step_empty_group(context, identifier):
    context.assembler.add(MessageGroup(identifier))


@when('I insert a {role} message "{content}" priced at {tokens:d} tokens into "{identifier}"')
def step_insert_message(context, role, content, tokens, identifier):
    message = Message(role=role, content=content, identifier=content, tokens=tokens)
    context.assembler.insert(message, identifier)


@when(
    'I attempt to insert a {role} message "{content}" priced at {tokens:d} tokens into "{identifier}"'
)
def step_attempt_insert_message(context, role, content, tokens, identifier):
    message = Message(role=role, content=content, identifier=content, tokens=tokens)
    try:
        context.assembler.insert(message, identifier)
    except TokenBudgetExceededError as exc:
        context.last_error = exc


@then("the remaining token budget is {budget:d}")
def step_remaining_budget(context, budget):
    assert context.assembler.token_budget == budget


@then('a token budget error is raised for "{identifier}"')
def step_budget_error(context, identifier):
    assert isinstance(context.last_error, TokenBudgetExceededError)
    assert context.last_error.identifier == identifier


@given("a token counter that prices each message at its length plus two")
def step_length_counter(context):
    context.token_counter = lambda payload, full=False: 2 + len(payload.get("content") or "")


@given("unnamed system messages:")
def step_system_messages(context):
    context.messages = [
        asyncio.run(
            Message.create("system", row["content"], row["identifier"], context.token_counter)
        )
        for row in context.table
    ]


@when("I squash the system messages")
def step_squash(context):
    group = MessageGroup("root", *context.messages)
    context.squashed = asyncio.run(squash_system_messages(group, context.token_counter))


@then("the squashed chat has {count:d} message")
def step_squashed_count(context, count):
    assert len(context.squashed.get_chat()) == count


@then('the squashed message content is "{content}"')
def step_squashed_content(context, content):
    assert context.squashed.flatten()[0].content == _unescape(content)


@then("the squashed message is priced at {tokens:d} tokens")
def step_squashed_tokens(context, tokens):
    assert context.squashed.get_tokens() == tokens


@given('a prompt manager for user "{user_name}" and character "{char_name}"')
def step_prompt_manager(context, user_name, char_name):
    context.prompt_manager = PromptManager(user_name=user_name, char_name=char_name)


@given('an outlet extension prompt "{key}" with value "{value}"')
def step_outlet_prompt(context, key, value):
    context.extension_prompts[key] = ExtensionPrompt(
        value=value, position=ExtensionPromptType.NONE
    )


@when("I prepare the prompts")
def step_prepare_prompts(context):
    context.prompts = prepare_prompts(_inputs(context), context.prompt_manager)


@then('no prepared prompt is identified as "{identifier}"')
def step_no_prepared_prompt(context, identifier):
    assert identifier not in context.prompts


@when("I prepare the chat messages")
def step_prepare_messages(context):
    context.orchestrator = PromptOrchestrator(context.prompt_manager)
    context.chat, _ = asyncio.run(context.orchestrator.prepare_messages(_inputs(context)))


@then('the orchestrator outlet "{key}" is "{value}"')
def step_outlet_value(context, key, value):
    assert context.orchestrator.last_outlets[key] == value


@then('no chat message contains "{text}"')
def step_chat_excludes(context, text):
    assert all(text not in (message.get("content") or "") for message in context.chat)


@given("the chat messages:")
def step_chat_messages(context):
    context.chat = json.loads(context.text)


@when("I apply names to content twice")
def step_apply_names_twice(context):
    context.chat = apply_names_to_content(apply_names_to_content(context.chat))


@then('the first chat message content is "{content}"')
def step_first_content(context, content):
    assert context.chat[0]["content"] == content
