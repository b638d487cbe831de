"""Run configuration with YAML support."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import Field, model_validator

from rlm_core.schemas import BaseSchema, LLMProviderConfig, LoopConfig


def _default_providers() -> list[LLMProviderConfig]:
    return [
        LLMProviderConfig(
            provider_id="local",
            provider_type="ollama",
            model_name="qwen3:30b",
        )
    ]


class RunConfig(BaseSchema):
    """Everything one ``rlm run`` needs besides the query and context."""

    run_id: str | None = None

    # LLM provider configurations
    providers: list[LLMProviderConfig] = Field(default_factory=_default_providers)
    root_provider_id: str | None = None
    # Answers llm_query calls; the root provider when unset
    sub_provider_id: str | None = None

    loop: LoopConfig = Field(default_factory=LoopConfig)

    # Registry locations, later ones override earlier ones
    registry_paths: list[str] = Field(default_factory=list)

    # Artifact management
    artifact_dir: str = "artifacts"
    save_transcript: bool = True

    log_level: str = "warning"

    @model_validator(mode="after")
    def check_provider_ids(self) -> "RunConfig":
        if not self.providers:
            raise ValueError("at least one provider is required")
        known = [provider.provider_id for provider in self.providers]
        if len(set(known)) != len(known):
            raise ValueError(f"duplicate provider_id in {known}")
        for field_name in ("root_provider_id", "sub_provider_id"):
            provider_id = getattr(self, field_name)
            if provider_id is not None and provider_id not in known:
                raise ValueError(f"{field_name} '{provider_id}' is not one of {known}")
        return self

    def provider_config(self, provider_id: str | None = None) -> LLMProviderConfig:
        """Provider with ``provider_id``; the root provider when ``None``."""
        wanted = provider_id or self.root_provider_id
        if wanted is None:
            return self.providers[0]
        for provider in self.providers:
            if provider.provider_id == wanted:
                return provider
        raise KeyError(wanted)


def load_config(yaml_path: str | Path) -> RunConfig:
    """Load run configuration from a YAML file.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        RunConfig instance

    Raises:
        FileNotFoundError: If YAML file doesn't exist
        ValueError: If YAML is invalid or missing required fields
    """
    yaml_path = Path(yaml_path)

    if not yaml_path.exists():
        raise FileNotFoundError(f"Config file not found: {yaml_path}")

    with open(yaml_path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {yaml_path}: {e}") from e

    if not data:
        raise ValueError(f"Empty or invalid YAML file: {yaml_path}")
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at the top of {yaml_path}")

    try:
        return RunConfig.from_dict(data)
    except Exception as e:
        raise ValueError(f"Invalid configuration in {yaml_path}: {e}") from e


def save_config(config: RunConfig, yaml_path: str | Path) -> None:
    """Save run configuration to YAML, with API keys redacted.

    Args:
        config: RunConfig to save
        yaml_path: Path where to save YAML file
    """
    yaml_path = Path(yaml_path)
    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    data = config.to_dict()
    providers = data.get("providers")
    if isinstance(providers, list):
        for provider in providers:
            if isinstance(provider, dict) and provider.get("api_key"):
                provider["api_key"] = "<redacted>"

    with open(yaml_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False, indent=2)
