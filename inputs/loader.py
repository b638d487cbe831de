"""Context file loading dispatched on file type."""

from __future__ import annotations

import importlib
import json
import logging
from pathlib import Path
from typing import cast

from rlm_core.errors import ContextLoadError

logger = logging.getLogger(__name__)


def _load_pdf_reader(path: Path) -> object:
    try:
        module = importlib.import_module("pypdf")
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency at runtime
        raise ImportError("pypdf is required to load PDF context files") from exc
    return module.PdfReader(str(path))


def _extract_pdf_text(path: Path) -> str:
    try:
        reader = _load_pdf_reader(path)
        pages = cast(list[object], getattr(reader, "pages"))
        texts = [str(getattr(page, "extract_text")() or "") for page in pages]
    except ImportError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise ContextLoadError(str(path), f"PDF extraction failed: {exc}") from exc
    text = "\n\n".join(chunk.strip() for chunk in texts if chunk.strip())
    if not text:
        raise ContextLoadError(str(path), "PDF contains no extractable text")
    logger.debug(f"Extracted {len(text)} characters from {len(texts)} PDF page(s)")
    return text


def load_context(path: str | Path) -> object:
    """Load a context value from ``path``.

    ``.pdf`` files yield their extracted text, ``.json`` files their decoded
    value, and anything else is read as UTF-8 text.
    """
    path = Path(path)
    if not path.exists():
        raise ContextLoadError(str(path), "file not found")
    if not path.is_file():
        raise ContextLoadError(str(path), "not a regular file")

    suffix = path.suffix.lower()
    if suffix == ".pdf":
        return _extract_pdf_text(path)

    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ContextLoadError(str(path), f"read failed: {exc}") from exc

    if suffix == ".json":
        try:
            return cast(object, json.loads(text))
        except json.JSONDecodeError as exc:
            raise ContextLoadError(str(path), f"invalid JSON: {exc}") from exc
    logger.debug(f"Loaded {len(text)} characters of context from {path}")
    return text
