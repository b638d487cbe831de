from rlm_core.parsing import FinalMarker, parse_response


def test_extracts_repl_blocks_in_order():
    text = "Plan.\n```repl\nx = 1\n```\nthen\n```repl\nprint(x)\n```\n"
    parsed = parse_response(text)

    assert parsed.blocks == ["x = 1\n", "print(x)\n"]
    assert parsed.final is None
    assert parsed.has_action is True


def test_other_fences_are_not_executed():
    text = "```python\nprint('not me')\n```\n```\nplain\n```\n"
    parsed = parse_response(text)

    assert parsed.blocks == []
    assert parsed.has_action is False


def test_final_literal_marker():
    parsed = parse_response("All done.\nFINAL(The answer is 42)\n")

    assert parsed.final == FinalMarker(kind="literal", value="The answer is 42")


def test_final_literal_keeps_nested_parentheses():
    parsed = parse_response("FINAL(f(x) = (a + b))")

    assert parsed.final == FinalMarker(kind="literal", value="f(x) = (a + b)")


def test_final_quoted_literal_is_unquoted():
    parsed = parse_response('FINAL("a ) inside quotes")')

    assert parsed.final == FinalMarker(kind="literal", value="a ) inside quotes")


def test_final_var_marker():
    parsed = parse_response("  FINAL_VAR(result)\n")

    assert parsed.final == FinalMarker(kind="variable", value="result")


def test_marker_must_start_a_line():
    parsed = parse_response("I will call FINAL(x) later.\n")

    assert parsed.final is None


def test_marker_inside_fence_is_ignored():
    text = "```repl\nprint('FINAL(no)')\n```\n```\nFINAL(also no)\n```\n"
    parsed = parse_response(text)

    assert parsed.final is None
    assert len(parsed.blocks) == 1


def test_blocks_after_marker_are_ignored():
    text = "```repl\nbefore = 1\n```\nFINAL_VAR(before)\n```repl\nafter = 2\n```\n"
    parsed = parse_response(text)

    assert parsed.blocks == ["before = 1\n"]
    assert parsed.final == FinalMarker(kind="variable", value="before")
    assert parsed.ignored_blocks == 1


def test_first_well_formed_marker_wins():
    parsed = parse_response("FINAL_VAR(not an identifier)\nFINAL(second)\nFINAL(third)\n")

    assert parsed.final == FinalMarker(kind="literal", value="second")
    assert parsed.notes == ["Ignored malformed FINAL_VAR(...) marker"]


def test_unclosed_marker_is_reported():
    parsed = parse_response("FINAL(never closed\n")

    assert parsed.final is None
    assert parsed.notes


def test_unterminated_block_is_reported_and_skipped():
    parsed = parse_response("```repl\nx = 1\n")

    assert parsed.blocks == []
    assert parsed.notes == ["Ignored an unterminated ```repl block"]
