from pathlib import Path

import pytest
import yaml

from rlm_core.schemas import LoopConfig, RunOutcome
from runner.config import RunConfig, load_config, save_config


def test_defaults_use_a_local_provider() -> None:
    config = RunConfig()

    assert config.provider_config().provider_type == "ollama"
    assert config.loop.max_iterations == 10
    assert config.loop.max_depth == 2
    assert config.loop.output_truncation == "head_tail"
    assert config.save_transcript is True


def test_load_config_reads_yaml(tmp_path: Path) -> None:
    data = {
        "run_id": "demo",
        "providers": [
            {"provider_id": "root", "provider_type": "openrouter", "model_name": "a/b"},
            {"provider_id": "cheap", "provider_type": "ollama", "model_name": "small"},
        ],
        "root_provider_id": "root",
        "sub_provider_id": "cheap",
        "loop": {"max_iterations": 4, "cell_timeout_seconds": 5},
        "registry_paths": ["helpers"],
    }
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump(data), encoding="utf-8")

    config = load_config(path)

    assert config.run_id == "demo"
    assert config.provider_config().model_name == "a/b"
    assert config.provider_config("cheap").provider_type == "ollama"
    assert config.loop.max_iterations == 4
    assert config.loop.cell_timeout_seconds == 5.0
    assert config.registry_paths == ["helpers"]


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_load_config_empty_file(tmp_path: Path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(path)


def test_unknown_provider_id_is_invalid(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"root_provider_id": "nope"}), encoding="utf-8")

    with pytest.raises(ValueError, match="root_provider_id"):
        load_config(path)


def test_loop_config_bounds() -> None:
    with pytest.raises(ValueError):
        LoopConfig(max_iterations=0)
    with pytest.raises(ValueError):
        LoopConfig(output_truncation="middle")  # type: ignore[arg-type]


def test_save_config_redacts_api_keys(tmp_path: Path) -> None:
    config = RunConfig.from_dict(
        {
            "providers": [
                {
                    "provider_id": "root",
                    "provider_type": "openai",
                    "model_name": "gpt-4o-mini",
                    "api_key": "sk-secret",
                }
            ]
        }
    )
    path = tmp_path / "nested" / "config.yaml"
    save_config(config, path)

    text = path.read_text(encoding="utf-8")
    assert "sk-secret" not in text
    assert load_config(path).providers[0].api_key == "<redacted>"
    assert config.providers[0].api_key == "sk-secret"


def test_run_outcome_serializes() -> None:
    outcome = RunOutcome(status="completed", answer="42", iterations=2)
    restored = RunOutcome.from_json(outcome.to_json())

    assert restored.answer == "42"
    assert restored.ok is True
    assert restored.finished_at.tzinfo is not None
