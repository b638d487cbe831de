from pathlib import Path

from llm.providers import ScriptedProvider
from rlm_core.loop import RLMLoop
from store.transcripts import TranscriptStore, sanitize_mapping


def _cell(code: str) -> str:
    return f"```repl\n{code}\n```"


def test_transcript_records_loops_messages_and_cells(tmp_path: Path) -> None:
    store = TranscriptStore(run_id="run-1", query="q", config={"name": "test"}, base_dir=tmp_path)
    provider = ScriptedProvider(script=[_cell("print('hi')"), "FINAL(bye)"])
    loop = RLMLoop(provider, transcript=store)
    outcome = loop.run("q", "ctx")

    assert Path(store.db_path) == tmp_path / "run-1" / "transcript.db"
    loops = store.get_loops()
    assert len(loops) == 1
    record = loops[0]
    assert record.loop_id == loop.loop_id
    assert record.status == "completed"
    assert record.answer == "bye"
    assert record.iterations == outcome.iterations == 2
    assert record.parent_id is None

    roles = [role for role, _ in store.get_messages(loop.loop_id)]
    assert roles == ["system", "user", "assistant", "user", "assistant"]

    cells = store.get_cells(loop.loop_id)
    assert len(cells) == 1
    assert cells[0].code == "print('hi')\n"
    assert cells[0].output == "hi\n"
    assert cells[0].error_kind is None
    assert cells[0].iteration == 1


def test_transcript_links_child_loops_to_parent(tmp_path: Path) -> None:
    def router(messages):
        if "Depth: 1" in messages[1]["content"]:
            return "FINAL(child answer)"
        return _cell("answer = rlm_query('inner', 'text')") + "\nFINAL_VAR(answer)"

    store = TranscriptStore(run_id="run-2", query="outer", base_dir=tmp_path)
    loop = RLMLoop(ScriptedProvider(router=router), transcript=store)
    loop.run("outer", None)

    loops = store.get_loops()
    assert [record.depth for record in loops] == [0, 1]
    assert loops[1].parent_id == loops[0].loop_id
    assert loops[1].query == "inner"
    assert loops[1].answer == "child answer"


def test_cell_errors_are_recorded(tmp_path: Path) -> None:
    store = TranscriptStore(run_id="run-3", query="q", base_dir=tmp_path)
    loop = RLMLoop(ScriptedProvider(script=[_cell("import os"), "FINAL(x)"]), transcript=store)
    loop.run("q", None)

    cells = store.get_cells(loop.loop_id)
    assert cells[0].error_kind == "import_blocked"
    assert cells[0].error_message


def test_failed_outcome_is_recorded(tmp_path: Path) -> None:
    store = TranscriptStore(run_id="run-4", query="q", base_dir=tmp_path)
    loop = RLMLoop(ScriptedProvider(script=["FINAL_VAR(nothing)"]), transcript=store)
    loop.run("q", None)

    record = store.get_loops()[0]
    assert record.status == "failed"
    assert record.error_kind == "UnresolvedFinalVar"


def test_config_secrets_are_never_stored(tmp_path: Path) -> None:
    config = {
        "providers": [{"provider_id": "p", "api_key": "sk-secret"}],
        "loop": {"max_iterations": 3},
        "token": "abc",
    }
    store = TranscriptStore(run_id="run-5", query="q", config=config, base_dir=tmp_path)

    stored = store.get_config()
    assert stored == {"loop": {"max_iterations": 3}, "providers": [{"provider_id": "p"}]}
    assert "sk-secret" not in Path(store.db_path).read_bytes().decode("utf-8", errors="ignore")


def test_string_config_is_redacted(tmp_path: Path) -> None:
    store = TranscriptStore(
        run_id="run-6", query="q", config='{"api_key": "sk-secret", "x": 1}', base_dir=tmp_path
    )

    stored = store.get_config()
    assert stored == {"api_key": "<redacted>", "x": 1}


def test_sanitize_mapping_is_recursive() -> None:
    cleaned = sanitize_mapping({"outer": {"API_KEY": "x", "keep": 1}, "items": [{"secret": 2}, 3]})

    assert cleaned == {"outer": {"keep": 1}, "items": [{}, 3]}
