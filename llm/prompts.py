"""Prompt templates for the REPL agent."""

from __future__ import annotations

import textwrap
from collections.abc import Sequence

from rlm_core.parsing import CELL_TAG


def _repl_instructions(output_budget: str, max_depth: int) -> str:
    return textwrap.dedent(
        f"""
        You answer a question about a context that is too large to read directly.
        The context lives in a persistent Python REPL as the global `context`; the
        question is in `query` and your recursion level in `depth`.

        Run code by writing one or more fenced blocks tagged `{CELL_TAG}`:

        ```{CELL_TAG}
        print(char_len("context"))
        print(context[:500])
        ```

        Variables persist between blocks and turns. Only what you print comes back
        to you, truncated to about {output_budget}, so print summaries
        and slices rather than whole values. Imports are limited to a small
        standard-library allow-list (math, re, json, collections, itertools, ...);
        there is no file, network or process access.

        Built-in functions:
        - print(*values): write to the output you will see next turn.
        - char_len(name) / byte_len(name): size of the variable called `name`.
        - char_trunc(text, limit): the first `limit` characters of `text`.
        - token_len(name): size of the variable called `name` in model tokens.
        - token_trunc(text, limit): the first `limit` model tokens of `text`.
        - show_vars(): names and types of your variables.
        - llm_query(prompt): ask a plain language model a single question; no REPL.
        - rlm_query(question, sub_context): delegate a question about
          `sub_context` to a fresh agent with its own REPL; returns its answer.
        - rlm_map(question, sub_contexts): run rlm_query over each item of a list,
          in parallel; returns the answers in the same order.
        Delegation is limited to depth {max_depth}; past that rlm_query raises
        SubQueryError, which you can catch.
        """
    ).strip()


def _strategy_notes() -> str:
    return textwrap.dedent(
        """
        Useful strategies:
        - Peek first: check the size and print the beginning of `context`.
        - Search: use `re` or `in` to locate relevant passages before reading them.
        - Partition and map: split large inputs into chunks and use rlm_map to
          analyse the chunks, then combine the answers in code.
        - Keep running notes in variables so later turns can build on them.
        """
    ).strip()


def _final_answer_rules() -> str:
    return textwrap.dedent(
        """
        When you are done, answer on its own line, outside any code block, with
        either:
        FINAL(your answer)
        FINAL_VAR(variable_name)
        FINAL_VAR returns the current value of a REPL variable. Code blocks written
        after the final answer are not executed.
        """
    ).strip()


class PromptTemplate:
    def system_prompt(
        self,
        registry_addendum: str = "",
        max_output_chars: int = 2000,
        max_depth: int = 2,
        max_output_tokens: int | None = None,
    ) -> str:
        if max_output_tokens is not None:
            output_budget = f"{max_output_tokens} tokens"
        else:
            output_budget = f"{max_output_chars} characters"
        sections = [
            _repl_instructions(output_budget, max_depth),
            registry_addendum.strip(),
            _strategy_notes(),
            _final_answer_rules(),
        ]
        return "\n\n".join(section for section in sections if section)

    def initial_user_message(self, query: str, context: object, depth: int) -> str:
        return "\n\n".join(
            [
                f"Question:\n{query}",
                f"Context: {describe_context(context)}. It is bound to `context`; "
                "inspect it with code before answering.",
                f"Depth: {depth}",
            ]
        )

    def cell_feedback(self, results: Sequence[tuple[int, str]]) -> str:
        """Render numbered cell results for the next user turn."""
        blocks = [f"Output of cell {index}:\n{rendered}" for index, rendered in results]
        return "\n\n".join(blocks)

    def no_action_note(self) -> str:
        return (
            f"No ```{CELL_TAG} block or final answer was found in your last message, "
            "so nothing was executed. Write code to make progress, or give FINAL(...) "
            "or FINAL_VAR(...) on its own line."
        )


def describe_context(context: object) -> str:
    if isinstance(context, str):
        return f"str with {len(context)} characters and {context.count(chr(10)) + 1} lines"
    if isinstance(context, (bytes, bytearray)):
        return f"bytes with {len(context)} bytes"
    if isinstance(context, dict):
        return f"dict with {len(context)} keys"
    if isinstance(context, (list, tuple)):
        return f"{type(context).__name__} with {len(context)} items"
    if context is None:
        return "None (no context was provided)"
    return type(context).__name__
