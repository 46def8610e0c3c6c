"""
Tests for source normalization and the code loader cache.
"""

import pytest

from plugin_runtime.errors import ArtifactNotFound, CompileError, EntryPointNotFound
from plugin_runtime.loader import CodeLoader, normalize_source


class TestNormalizeSource:

    def test_export_default_is_stripped(self):
        source, entry = normalize_source("export default async def handler(ctx):\n    return 1\n")
        assert "export" not in source
        assert entry == "handler"

    def test_export_default_after_comments(self):
        text = "# generated widget\n\nexport default def render(props):\n    return None\n"
        source, entry = normalize_source(text)
        assert entry == "render"
        assert source.splitlines()[0] == "# generated widget"

    def test_export_default_after_code_is_left_alone(self):
        text = "x = 1\nexport default def render(props):\n    return x\n"
        with pytest.raises(CompileError, match="Syntax error"):
            normalize_source(text)

    def test_module_imports_blanked_keeping_line_numbers(self):
        text = "import json\nfrom datetime import datetime\n\ndef main(v, ctx):\n    return v\n"
        source, entry = normalize_source(text)
        lines = source.splitlines()
        assert lines[0] == "" and lines[1] == ""
        assert lines[3] == "def main(v, ctx):"
        assert entry == "main"

    def test_first_function_is_entry(self):
        text = "def first(v, ctx):\n    return v\n\ndef second(v, ctx):\n    return v\n"
        assert normalize_source(text)[1] == "first"

    def test_explicit_entry_marker(self):
        text = "def helper(v):\n    return v\n\ndef run(v, ctx):\n    return helper(v)\n\n__entry__ = 'run'\n"
        source, entry = normalize_source(text)
        assert entry == "run"
        assert "__entry__" not in source

    def test_explicit_entry_must_exist(self):
        with pytest.raises(EntryPointNotFound, match="missing"):
            normalize_source("def run(v):\n    return v\n__entry__ = 'missing'\n")

    def test_explicit_entry_must_be_literal(self):
        with pytest.raises(EntryPointNotFound):
            normalize_source("def run(v):\n    return v\nname = 'run'\n__entry__ = name\n")

    def test_lambda_assignment_is_an_entry(self):
        assert normalize_source("handler = lambda items, ctx: items\n")[1] == "handler"

    def test_no_function_found(self):
        with pytest.raises(EntryPointNotFound):
            normalize_source("x = 1\ny = x + 1\n")

    def test_empty_source(self):
        with pytest.raises(CompileError, match="empty"):
            normalize_source("   \n")

    def test_entry_not_found_is_a_compile_error(self):
        assert issubclass(EntryPointNotFound, CompileError)


class TestCodeLoader:

    def _save(self, store, plugin, text, key="order.created"):
        return store.save_artifact(plugin["id"], "event", key, text)

    def test_load_by_slug(self, store, make_plugin):
        plugin = make_plugin("order-notes")
        self._save(store, plugin, "def handle(payload, ctx):\n    return payload\n")
        unit = CodeLoader(store).load("order-notes", "event", "order.created")
        assert unit.entry == "handle"
        assert "source_text" not in unit.artifact

    def test_cache_hit_returns_same_unit(self, store, make_plugin):
        plugin = make_plugin("order-notes")
        artifact = self._save(store, plugin, "def handle(payload, ctx):\n    return payload\n")
        loader = CodeLoader(store)
        assert loader.load_artifact(artifact) is loader.load_artifact(artifact)

    def test_resave_changes_cache_key(self, store, make_plugin):
        plugin = make_plugin("order-notes")
        loader = CodeLoader(store)
        first = loader.load_artifact(self._save(store, plugin, "def a(p, ctx):\n    return 1\n"))
        second = loader.load_artifact(self._save(store, plugin, "def b(p, ctx):\n    return 2\n"))
        assert first.artifact_id == second.artifact_id
        assert first.cache_key != second.cache_key
        assert second.entry == "b"

    def test_cache_is_bounded(self, store, make_plugin):
        plugin = make_plugin("order-notes")
        loader = CodeLoader(store, cache_size=2)
        for i in range(4):
            loader.load_artifact(self._save(store, plugin, f"def h{i}(p, ctx):\n    return {i}\n", key=f"e{i}"))
        assert len(loader._cache) == 2

    def test_compile_error_carries_artifact_id(self, store, make_plugin):
        plugin = make_plugin("order-notes")
        artifact = self._save(store, plugin, "def broken(:\n")
        with pytest.raises(CompileError) as exc:
            CodeLoader(store).load_artifact(artifact)
        assert exc.value.artifact_id == artifact["id"]

    def test_unknown_plugin(self, store):
        with pytest.raises(ArtifactNotFound):
            CodeLoader(store).load("nope", "event", "order.created")

    def test_unknown_artifact(self, store, make_plugin):
        make_plugin("order-notes")
        with pytest.raises(ArtifactNotFound):
            CodeLoader(store).load("order-notes", "event", "order.paid")
