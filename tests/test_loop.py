from collections.abc import Sequence

import pytest

from llm.base import Message
from llm.providers import ScriptedProvider
from registry.catalogue import FunctionRegistry
from rlm_core.cancel import CancelToken
from rlm_core.errors import SetupError
from rlm_core.loop import LoopEvent, LoopState, RLMLoop, run_query
from rlm_core.schemas import LoopConfig


def _cell(code: str) -> str:
    return f"```repl\n{code}\n```"


def _depth(messages: Sequence[Message]) -> int:
    first_user = messages[1]["content"]
    for line in first_user.splitlines():
        if line.startswith("Depth: "):
            return int(line[len("Depth: "):])
    raise AssertionError("no depth line in the first user message")


def _assistant_turns(messages: Sequence[Message]) -> int:
    return sum(1 for message in messages if message["role"] == "assistant")


# --- Termination ---


def test_final_literal_ends_the_loop():
    provider = ScriptedProvider(script=["FINAL(hello world)"])
    outcome = RLMLoop(provider).run("Say hello", "ctx")

    assert outcome.status == "completed"
    assert outcome.ok is True
    assert outcome.answer == "hello world"
    assert outcome.iterations == 1
    assert outcome.cells_executed == 0


def test_state_persists_across_iterations_and_final_var_resolves():
    provider = ScriptedProvider(
        script=[
            _cell("total = 40"),
            _cell("total = total + 2") + "\nFINAL_VAR(total)",
        ]
    )
    loop = RLMLoop(provider)
    outcome = loop.run("Add", None)

    assert outcome.answer == "42"
    assert outcome.iterations == 2
    assert outcome.cells_executed == 2
    assert loop.state == LoopState.TERMINATED


def test_blocks_after_final_marker_are_not_executed():
    response = _cell("x = 'before'") + "\nFINAL_VAR(x)\n" + _cell("x = 'after'")
    provider = ScriptedProvider(script=[response])
    loop = RLMLoop(provider)
    outcome = loop.run("Which?", None)

    assert outcome.answer == "before"
    assert outcome.cells_executed == 1
    assert loop.environment is not None
    assert loop.environment.lookup("x") == "before"


def test_unbound_final_var_fails():
    provider = ScriptedProvider(script=["FINAL_VAR(missing)"])
    outcome = RLMLoop(provider).run("q", None)

    assert outcome.status == "failed"
    assert outcome.error is not None
    assert outcome.error.kind == "UnresolvedFinalVar"
    assert "missing" in outcome.error.message


def test_final_var_naming_a_registry_function_fails():
    registry = FunctionRegistry.from_map(
        {"helper": 'def helper():\n    """Return a constant."""\n    return 1\n'}
    )
    provider = ScriptedProvider(script=["FINAL_VAR(helper)"])
    outcome = RLMLoop(provider, registry=registry).run("q", None)

    assert outcome.status == "failed"
    assert outcome.error is not None
    assert outcome.error.kind == "UnresolvedFinalVar"
    assert "helper" in outcome.error.message


def test_max_iterations_is_exact():
    provider = ScriptedProvider(router=lambda messages: _cell("print('still working')"))
    outcome = RLMLoop(provider, LoopConfig(max_iterations=3)).run("q", None)

    assert outcome.status == "failed"
    assert outcome.error is not None
    assert outcome.error.kind == "MaxIterationsExceeded"
    assert provider.call_count == 3
    assert outcome.iterations == 3
    assert outcome.cells_executed == 3


# --- Feedback ---


def test_cell_output_is_fed_back():
    provider = ScriptedProvider(script=[_cell("print('hello')"), "FINAL(ok)"])
    loop = RLMLoop(provider)
    loop.run("q", None)

    assert [message["role"] for message in loop.messages] == [
        "system",
        "user",
        "assistant",
        "user",
        "assistant",
    ]
    assert loop.messages[3]["content"] == "Output of cell 1:\nhello"


def test_cell_errors_are_fed_back_and_loop_recovers():
    provider = ScriptedProvider(script=[_cell("1 / 0"), "FINAL(recovered)"])
    loop = RLMLoop(provider)
    outcome = loop.run("q", None)

    assert outcome.answer == "recovered"
    assert "[runtime_error] ZeroDivisionError" in loop.messages[3]["content"]


def test_response_without_action_gets_a_note():
    provider = ScriptedProvider(script=["Let me think about it.", "FINAL(done)"])
    loop = RLMLoop(provider)
    outcome = loop.run("q", None)

    assert outcome.answer == "done"
    assert outcome.iterations == 2
    assert "No ```repl block or final answer" in loop.messages[3]["content"]


def test_first_message_carries_query_context_and_depth():
    provider = ScriptedProvider(script=["FINAL(x)"])
    loop = RLMLoop(provider)
    loop.run("What is in here?", ["a", "b"])

    first_user = loop.messages[1]["content"]
    assert "Question:\nWhat is in here?" in first_user
    assert "list with 2 items" in first_user
    assert "Depth: 0" in first_user


def test_registry_addendum_reaches_system_prompt():
    registry = FunctionRegistry.from_map(
        {"word_count": 'def word_count(text):\n    """Count words in text."""\n    return len(text.split())\n'}
    )
    provider = ScriptedProvider(script=[_cell("n = word_count(context)") + "\nFINAL_VAR(n)"])
    loop = RLMLoop(provider, registry=registry)
    outcome = loop.run("How many words?", "one two three")

    assert "- word_count(text)" in loop.messages[0]["content"]
    assert outcome.answer == "3"


# --- Failures ---


def test_provider_error_fails_the_loop_without_retry():
    provider = ScriptedProvider(script=[])
    outcome = RLMLoop(provider).run("q", None)

    assert outcome.status == "failed"
    assert outcome.error is not None
    assert outcome.error.kind == "ProviderError"
    assert provider.call_count == 1


def test_unexpected_provider_exception_is_reported_as_provider_error():
    def broken_router(messages: Sequence[Message]) -> str:
        raise RuntimeError("socket closed")

    outcome = RLMLoop(ScriptedProvider(router=broken_router)).run("q", None)

    assert outcome.error is not None
    assert outcome.error.kind == "ProviderError"
    assert "socket closed" in outcome.error.message


def test_setup_error_is_raised_before_any_model_call():
    registry = FunctionRegistry.from_map(
        {"tool": 'import os\n\ndef tool():\n    """Use os."""\n    return os.getcwd()\n'}
    )
    provider = ScriptedProvider(script=["FINAL(unused)"])

    with pytest.raises(SetupError):
        RLMLoop(provider, registry=registry).run("q", None)
    assert provider.call_count == 0


def test_cancelled_token_cancels_the_loop():
    token = CancelToken()
    token.cancel("user abort")
    provider = ScriptedProvider(script=["FINAL(unused)"])
    outcome = RLMLoop(provider, cancel_token=token).run("q", None)

    assert outcome.status == "cancelled"
    assert outcome.error is not None
    assert outcome.error.kind == "LoopCancelled"
    assert outcome.error.message == "user abort"
    assert provider.call_count == 0


# --- Recursion ---


def test_nested_query_runs_in_an_isolated_environment():
    def router(messages: Sequence[Message]) -> str:
        if _depth(messages) == 1:
            return _cell("secret = 'child'\nresult = context.upper()") + "\nFINAL_VAR(result)"
        if _assistant_turns(messages) == 0:
            return _cell("secret = 'parent'\nanswer = rlm_query('inner question', 'sub text')")
        return "FINAL_VAR(answer)"

    provider = ScriptedProvider(router=router)
    loop = RLMLoop(provider)
    outcome = loop.run("outer question", "parent context")

    assert outcome.answer == "SUB TEXT"
    assert loop.environment is not None
    assert loop.environment.lookup("secret") == "parent"
    assert loop.environment.lookup("context") == "parent context"
    child_prompts = [t[1]["content"] for t in provider.transcripts if _depth(t) == 1]
    assert len(child_prompts) == 1
    assert "Question:\ninner question" in child_prompts[0]


def test_depth_limit_raises_sub_query_error_into_the_cell():
    code = "try:\n    rlm_query('q', 'c')\nexcept SubQueryError as exc:\n    print('limit', exc)"
    provider = ScriptedProvider(script=[_cell(code), "FINAL(done)"])
    loop = RLMLoop(provider, LoopConfig(max_depth=0))
    outcome = loop.run("q", None)

    assert outcome.answer == "done"
    assert "limit Maximum recursion depth 0 reached" in loop.messages[3]["content"]


def test_failed_child_surfaces_as_sub_query_failure_in_parent():
    def router(messages: Sequence[Message]) -> str:
        if _depth(messages) == 1:
            return "I am not sure."
        if _assistant_turns(messages) == 0:
            return _cell("rlm_query('q', 'c')")
        return "FINAL(parent survived)"

    loop = RLMLoop(ScriptedProvider(router=router), LoopConfig(max_iterations=2))
    outcome = loop.run("q", None)

    assert outcome.answer == "parent survived"
    feedback = loop.messages[3]["content"]
    assert "[sub_query_failed]" in feedback
    assert "MaxIterationsExceeded" in feedback


def test_rlm_map_answers_keep_input_order():
    def router(messages: Sequence[Message]) -> str:
        if _depth(messages) == 1:
            return _cell("out = context.upper()") + "\nFINAL_VAR(out)"
        return _cell("parts = rlm_map('shout', ['a', 'b', 'c'])") + "\nFINAL_VAR(parts)"

    outcome = RLMLoop(ScriptedProvider(router=router)).run("q", None)

    assert outcome.answer == "['A', 'B', 'C']"


def test_llm_query_uses_the_sub_provider():
    root = ScriptedProvider(script=[_cell("note = llm_query('summarise this')") + "\nFINAL_VAR(note)"])
    sub = ScriptedProvider(provider_id="sub", script=["a short summary"])
    outcome = RLMLoop(root, sub_provider=sub).run("q", None)

    assert outcome.answer == "a short summary"
    assert sub.call_count == 1
    assert sub.transcripts[0] == [{"role": "user", "content": "summarise this"}]


# --- Observability ---


def test_events_and_usage_are_reported():
    events: list[LoopEvent] = []
    provider = ScriptedProvider(script=[_cell("x = 1"), "FINAL(one)"])
    outcome = run_query("q", None, provider, on_event=events.append)

    kinds = [event.kind for event in events]
    assert kinds == ["iteration", "cell", "iteration", "final"]
    assert outcome.usage["calls"] == 2
