import signal
from pathlib import Path

from llm.providers import ScriptedProvider
from runner.config import RunConfig
from runner.session import RunSession
from store.transcripts import TranscriptStore


def _config(tmp_path: Path, **overrides: object) -> RunConfig:
    data: dict[str, object] = {
        "run_id": "session_run",
        "providers": [
            {"provider_id": "root", "provider_type": "scripted", "model_name": "m"},
            {"provider_id": "cheap", "provider_type": "scripted", "model_name": "m"},
        ],
        "sub_provider_id": "cheap",
        "artifact_dir": str(tmp_path),
    }
    data.update(overrides)
    return RunConfig.from_dict(data)


def test_session_wires_root_and_sub_providers(tmp_path: Path) -> None:
    root = ScriptedProvider(
        provider_id="root", script=["```repl\nnote = llm_query('hi')\n```\nFINAL_VAR(note)"]
    )
    cheap = ScriptedProvider(provider_id="cheap", script=["from the cheap model"])
    session = RunSession(_config(tmp_path), show_progress=False, providers={"root": root, "cheap": cheap})

    outcome = session.run("q", "ctx")

    assert outcome.answer == "from the cheap model"
    assert root.call_count == 1
    assert cheap.call_count == 1
    assert session.run_dir == tmp_path / "session_run"
    assert isinstance(session.transcript, TranscriptStore)
    assert session.transcript.get_loops()[0].answer == "from the cheap model"
    assert (session.run_dir / "outcome.json").exists()


def test_session_loads_registry_paths(tmp_path: Path) -> None:
    helpers = tmp_path / "helpers.py"
    helpers.write_text(
        'def shout(text):\n    """Upper-case text."""\n    return text.upper()\n', encoding="utf-8"
    )
    root = ScriptedProvider(provider_id="root", script=["```repl\nloud = shout(context)\n```\nFINAL_VAR(loud)"])
    config = _config(tmp_path, registry_paths=[str(helpers)], save_transcript=False, sub_provider_id=None)
    session = RunSession(config, show_progress=False, providers={"root": root})

    outcome = session.run("q", "quiet words")

    assert outcome.answer == "QUIET WORDS"
    assert session.transcript is None
    assert not (tmp_path / "session_run").exists()


def test_signal_handler_cancels_the_run(tmp_path: Path) -> None:
    session = RunSession(_config(tmp_path), show_progress=False)
    previous = session._setup_signal_handlers()
    try:
        handler = signal.getsignal(signal.SIGINT)
        assert callable(handler)
        handler(signal.SIGINT, None)
    finally:
        session._restore_signal_handlers(previous)

    assert session.interrupted is True
    assert session.cancel_token.cancelled is True
    assert session.cancel_token.reason == "interrupted by signal"
    assert signal.getsignal(signal.SIGINT) is previous[signal.SIGINT]
