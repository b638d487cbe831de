"""CLI interface for running recursive REPL queries."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from inputs.loader import load_context
from registry.catalogue import FunctionRegistry
from rlm_core.errors import ContextLoadError, SetupError
from rlm_core.schemas import LLMProviderConfig

from runner.config import RunConfig, load_config
from runner.session import RunSession

app = typer.Typer(help="Recursive Language Model REPL CLI")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _override_root_provider(
    config: RunConfig,
    provider: str | None,
    model: str | None,
    base_url: str | None,
    api_key: str | None,
) -> RunConfig:
    if provider is None and model is None and base_url is None and api_key is None:
        return config
    root = config.provider_config()
    data = root.to_dict()
    if provider is not None and provider != root.provider_type:
        data["provider_type"] = provider
        # The previous endpoint belongs to the previous provider type
        data["base_url"] = None
    if model is not None:
        data["model_name"] = model
    if base_url is not None:
        data["base_url"] = base_url
    if api_key is not None:
        data["api_key"] = api_key
    replaced = LLMProviderConfig.from_dict(data)
    config.providers = [
        replaced if item.provider_id == root.provider_id else item for item in config.providers
    ]
    return config


def _read_api_key(path: str) -> str:
    key_path = Path(path)
    if not key_path.is_file():
        raise FileNotFoundError(f"API key file not found: {path}")
    key = key_path.read_text(encoding="utf-8").strip()
    if not key:
        raise ValueError(f"API key file is empty: {path}")
    return key


@app.command()
def run(
    query: str = typer.Argument(..., help="Question to answer"),
    context_path: Optional[str] = typer.Option(
        None, "--context", "-c", help="Context file (.txt, .md, .json, .pdf, ...)"
    ),
    config_path: Optional[str] = typer.Option(None, "--config", help="Path to run YAML config"),
    provider: Optional[str] = typer.Option(
        None, "--provider", help="Root provider type (openai, openrouter, ollama, deepseek, scripted)"
    ),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Root model name"),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="OpenAI-compatible endpoint"),
    api_key_file: Optional[str] = typer.Option(
        None, "--api-key-file", help="File holding the API key for the root provider"
    ),
    max_iterations: Optional[int] = typer.Option(
        None, "--max-iterations", min=1, help="Model responses per loop before giving up"
    ),
    max_depth: Optional[int] = typer.Option(None, "--max-depth", min=0, help="Deepest nested loop"),
    registry: Optional[list[str]] = typer.Option(
        None, "--registry", "-r", help="Registry file or directory; repeat to layer overrides"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="debug, info, warning, error"),
    no_transcript: bool = typer.Option(False, "--no-transcript", help="Do not write artifacts"),
    artifact_dir: Optional[str] = typer.Option(None, "--artifact-dir", help="Artifacts directory"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Print only the answer"),
) -> None:
    """Answer QUERY over an optional context file."""
    try:
        config = load_config(config_path) if config_path else RunConfig()
        api_key = _read_api_key(api_key_file) if api_key_file else None
        config = _override_root_provider(config, provider, model, base_url, api_key)
        if max_iterations is not None:
            config.loop.max_iterations = max_iterations
        if max_depth is not None:
            config.loop.max_depth = max_depth
        if registry:
            config.registry_paths = list(registry)
        if log_level is not None:
            config.log_level = log_level
        if no_transcript:
            config.save_transcript = False
        if artifact_dir is not None:
            config.artifact_dir = artifact_dir
        if config.log_level.lower() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {config.log_level}")
    except FileNotFoundError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except ValueError as e:
        typer.secho(f"❌ Invalid config: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    _configure_logging(config.log_level)

    try:
        context = load_context(context_path) if context_path else None
    except ContextLoadError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    session = RunSession(config, show_progress=not quiet)
    try:
        outcome = session.run(query, context)
    except SetupError as e:
        typer.secho(f"❌ Setup failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except Exception as e:
        typer.secho(f"❌ Run failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if not outcome.ok:
        error = outcome.error
        detail = f"{error.kind}: {error.message}" if error is not None else outcome.status
        typer.secho(f"❌ Run {outcome.status}: {detail}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if quiet:
        typer.echo(outcome.answer or "")
        return
    typer.secho("\n✅ Final answer:", fg=typer.colors.GREEN)
    typer.echo(outcome.answer or "")
    typer.echo(
        f"\n   Iterations: {outcome.iterations} | Cells: {outcome.cells_executed}"
        f" | Model calls: {outcome.usage.get('calls', 0)}"
    )
    if config.save_transcript:
        typer.echo(f"   Artifacts:  {session.run_dir}")


@app.command()
def functions(
    paths: list[str] = typer.Argument(..., help="Registry files or directories, lowest priority first"),
) -> None:
    """Validate registry locations and print the prompt section they produce."""
    try:
        loaded = FunctionRegistry.from_paths(paths)
    except SetupError as e:
        typer.secho(f"❌ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if not len(loaded):
        typer.secho("No functions found.", fg=typer.colors.YELLOW)
        return

    typer.secho(f"✅ {len(loaded)} function(s) loaded\n", fg=typer.colors.GREEN)
    definitions = loaded.iter_functions()
    for name in loaded.names():
        typer.echo(f"  {name}  ({definitions[name].origin})")
    typer.echo("")
    typer.echo(loaded.system_prompt_addendum())


if __name__ == "__main__":
    app()
