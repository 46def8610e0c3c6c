"""
Code Loader — resolves artifacts and normalizes plugin source text.

Stored source is Python, frequently AI-generated. Normalization strips the
`export default` marker some generators prepend, removes module-level imports
(every external reference arrives through capability injection) and locates
the entry-point function.
"""

import ast
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

from config import COMPILE_CACHE_SIZE, MAX_SOURCE_BYTES
from plugin_runtime.errors import ArtifactNotFound, CompileError, EntryPointNotFound
from plugin_runtime.store import ManifestStore

logger = logging.getLogger(__name__)

_EXPORT_DEFAULT = re.compile(r"^(\s*)export\s+default\s+", re.MULTILINE)
_ENTRY_NAME = "__entry__"
_UNIT_FIELDS = ("id", "plugin_id", "kind", "key", "method", "name", "category", "route", "source_hash")


@dataclass(frozen=True)
class LoadedUnit:
    artifact: dict
    source: str
    entry: str

    @property
    def artifact_id(self) -> str:
        return self.artifact["id"]

    @property
    def cache_key(self) -> str:
        return f"{self.artifact['id']}:{self.artifact['source_hash']}"


def _strip_export_default(text: str) -> str:
    match = _EXPORT_DEFAULT.search(text)
    if not match:
        return text
    before = text[:match.start()].splitlines()
    if any(line.strip() and not line.strip().startswith("#") for line in before):
        return text
    return text[:match.start()] + match.group(1) + text[match.end():]


def _entry_from_assign(node: ast.Assign) -> Optional[str]:
    if (len(node.targets) == 1 and isinstance(node.targets[0], ast.Name)
            and node.targets[0].id == _ENTRY_NAME):
        if isinstance(node.value, ast.Constant) and isinstance(node.value.value, str):
            return node.value.value
        raise EntryPointNotFound(f"{_ENTRY_NAME} must be a string literal")
    return None


def normalize_source(text: str) -> tuple[str, str]:
    """Return (normalized source, entry-point name).

    Raises CompileError on syntax errors and EntryPointNotFound when no
    callable can be identified.
    """
    if not text or not text.strip():
        raise CompileError("Source is empty")
    if len(text.encode("utf-8")) > MAX_SOURCE_BYTES:
        raise CompileError(f"Source too large (max {MAX_SOURCE_BYTES} bytes)")

    text = _strip_export_default(text)
    try:
        tree = ast.parse(text)
    except SyntaxError as e:
        raise CompileError(f"Syntax error at line {e.lineno}: {e.msg}")

    lines = text.splitlines()
    drop: set[int] = set()
    explicit = None
    defined: list[str] = []

    for node in tree.body:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            drop.update(range(node.lineno, node.end_lineno + 1))
        elif isinstance(node, ast.Assign):
            name = _entry_from_assign(node)
            if name is not None:
                explicit = name
                drop.update(range(node.lineno, node.end_lineno + 1))
            elif (len(node.targets) == 1 and isinstance(node.targets[0], ast.Name)
                  and isinstance(node.value, ast.Lambda)):
                defined.append(node.targets[0].id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            defined.append(node.name)

    if explicit is not None:
        if explicit not in defined:
            raise EntryPointNotFound(f"Entry point '{explicit}' is not defined at module level")
        entry = explicit
    elif defined:
        entry = defined[0]
    else:
        raise EntryPointNotFound("No entry-point function found")

    # Dropped lines become blank so line numbers in tracebacks still match
    source = "\n".join("" if i in drop else line for i, line in enumerate(lines, 1))
    return source + "\n", entry


class CodeLoader:
    """Fetches artifacts from the Manifest Store and caches normalized units."""

    def __init__(self, store: ManifestStore, cache_size: int = COMPILE_CACHE_SIZE):
        self.store = store
        self._cache: OrderedDict[str, LoadedUnit] = OrderedDict()
        self._cache_size = cache_size

    def load(self, slug: str, kind: str, key: str, method: Optional[str] = None) -> LoadedUnit:
        plugin = self.store.get_plugin(slug)
        if not plugin:
            raise ArtifactNotFound(f"Plugin '{slug}' not found")
        artifact = self.store.find_artifact(plugin["id"], kind, key, method or "")
        if not artifact:
            raise ArtifactNotFound(f"No {kind} '{key}' in plugin '{slug}'")
        return self.load_artifact(artifact)

    def load_artifact(self, artifact: dict) -> LoadedUnit:
        cache_key = f"{artifact['id']}:{artifact['source_hash']}"
        unit = self._cache.get(cache_key)
        if unit is not None:
            self._cache.move_to_end(cache_key)
            return unit
        try:
            source, entry = normalize_source(artifact["source_text"])
        except CompileError as e:
            e.artifact_id = artifact["id"]
            raise
        unit = LoadedUnit(
            artifact={k: artifact.get(k) for k in _UNIT_FIELDS},
            source=source,
            entry=entry,
        )
        self._cache[cache_key] = unit
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return unit
