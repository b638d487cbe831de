import pytest

from sandbox import tokens


@pytest.fixture
def tokenizer():
    """The p50k_base encoding; skips when it cannot be loaded (e.g. offline)."""
    try:
        return tokens.get_encoding()
    except Exception as exc:  # noqa: BLE001
        pytest.skip(f"{tokens.ENCODING_NAME} encoding unavailable: {exc}")
