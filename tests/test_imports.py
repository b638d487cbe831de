"""
Smoke tests to verify all modules can be imported.
"""

def test_import_rlm_core():
    import rlm_core
    assert hasattr(rlm_core, '__version__')


def test_import_llm():
    import llm
    assert hasattr(llm, '__version__')


def test_import_sandbox():
    import sandbox
    assert hasattr(sandbox, '__version__')


def test_import_registry():
    import registry
    assert hasattr(registry, '__version__')


def test_import_store():
    import store
    assert hasattr(store, '__version__')


def test_import_inputs():
    import inputs
    assert hasattr(inputs, '__version__')


def test_import_runner():
    import runner
    assert hasattr(runner, '__version__')
