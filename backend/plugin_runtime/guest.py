"""
Sandbox guest — the process plugin code actually runs in.

Started by plugin_runtime.sandbox as `python -I -B guest.py`. Standard library
only: nothing from the host package is importable here. The guest reads one
JSON request per line on stdin and answers on stdout:

    host  -> guest   {"id", "op": "invoke", "key", "source", "entry", "globals", "args"}
    guest -> host    {"op": "call", "target", "method", "args", "kwargs"}
    host  -> guest   {"op": "reply", "value"} | {"op": "reply", "error": {"type", "message"}}
    guest -> host    {"op": "log", "level", "message"}
    guest -> host    {"op": "result", "value", "response"}
                     {"op": "error", "error_type", "message", "phase"}

Compiled code objects are cached per key; every invocation executes in a
fresh namespace with restricted builtins.
"""

import argparse
import asyncio
import builtins
import inspect
import json
import sys
import traceback
from collections import OrderedDict

try:
    import resource
except ImportError:  # not available on Windows
    resource = None

# The real stdout is the protocol channel; stray writes go to stderr.
_OUT = sys.stdout
_IN = sys.stdin
sys.stdout = sys.stderr

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bool", "callable", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "int", "isinstance", "iter",
    "len", "list", "map", "max", "min", "next", "ord", "pow", "range", "repr",
    "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
    "ZeroDivisionError", "RuntimeError", "StopIteration", "ArithmeticError",
    "LookupError", "NotImplementedError", "AssertionError",
)


def _send(message: dict):
    _OUT.write(json.dumps(message, default=str) + "\n")
    _OUT.flush()


def _receive() -> dict:
    line = _IN.readline()
    if not line:
        raise SystemExit(0)
    return json.loads(line)


class CapabilityError(Exception):
    """Raised inside plugin code when the host refuses or fails a capability call."""

    def __init__(self, message: str, kind: str = "CapabilityError"):
        super().__init__(message)
        self.kind = kind


# ── Capability proxies ──

class Record(dict):
    """Mapping with attribute access: `ctx.db` and `ctx["db"]` both work."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name)


def _remote_method(target: str, method: str):
    async def call(*args, **kwargs):
        _send({"op": "call", "target": target, "method": method,
               "args": list(args), "kwargs": kwargs})
        reply = _receive()
        if reply.get("op") != "reply":
            raise CapabilityError(f"Unexpected host message: {reply.get('op')}")
        if "error" in reply:
            err = reply["error"] or {}
            raise CapabilityError(err.get("message", "capability call failed"),
                                  err.get("type", "CapabilityError"))
        return reply.get("value")
    call.__name__ = method
    return call


class RemoteProxy:
    def __init__(self, name: str, methods: list):
        for method in methods:
            setattr(self, method, _remote_method(name, method))

    def __repr__(self):
        return "<capability>"


def _component(name: str):
    def build(props=None, *children, **kwargs):
        if props is not None and not isinstance(props, dict):
            children = (props,) + children
            props = None
        merged = dict(props or {})
        extra = kwargs.pop("children", None)
        merged.update(kwargs)
        items = list(children)
        if extra is not None:
            items.extend(extra if isinstance(extra, (list, tuple)) else [extra])
        flat = []
        for child in items:
            if isinstance(child, (list, tuple)):
                flat.extend(child)
            elif child is not None:
                flat.append(child)
        return {"type": name, "props": merged, "children": flat}
    build.__name__ = name
    return build


class UiKit:
    def __init__(self, components: list):
        for name in components:
            setattr(self, name, _component(name))


class Response:
    """Controller response: `response.status(400).json({...})`."""

    def __init__(self):
        self._state = {"sent": False, "status": 200, "body": None}

    def status(self, code):
        self._state["status"] = int(code)
        return self

    def json(self, body):
        self._state["sent"] = True
        self._state["body"] = body
        return self

    send = json

    def snapshot(self) -> dict:
        return dict(self._state)


class PluginLog:
    def _emit(self, level: str, parts):
        _send({"op": "log", "level": level, "message": " ".join(str(p) for p in parts)})

    def debug(self, *parts):
        self._emit("debug", parts)

    def info(self, *parts):
        self._emit("info", parts)

    def warning(self, *parts):
        self._emit("warning", parts)

    warn = warning

    def error(self, *parts):
        self._emit("error", parts)


def _plugin_print(*parts, **_kwargs):
    _send({"op": "log", "level": "info", "message": " ".join(str(p) for p in parts)})


def _decode(spec: dict, state: dict):
    kind = spec.get("type")
    if kind == "value":
        return _wrap(spec.get("value"))
    if kind == "remote":
        return RemoteProxy(spec["name"], spec.get("methods", []))
    if kind == "ui":
        return UiKit(spec.get("components", []))
    if kind == "response":
        response = Response()
        state["response"] = response
        return response
    if kind == "namespace":
        return Record({k: _decode(v, state) for k, v in spec.get("fields", {}).items()})
    raise ValueError(f"unknown capability spec: {kind}")


def _wrap(value):
    """Give plain JSON objects attribute access so `request.body.qty` reads naturally."""
    if isinstance(value, dict):
        return Record({k: _wrap(v) for k, v in value.items()})
    if isinstance(value, list):
        return [_wrap(v) for v in value]
    return value


def _safe_builtins() -> dict:
    safe = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES}
    safe.update({"True": True, "False": False, "None": None,
                 "print": _plugin_print, "CapabilityError": CapabilityError})
    return safe


# ── Invocation ──

class Guest:
    def __init__(self, cache_size: int):
        self._codes: OrderedDict = OrderedDict()
        self._cache_size = cache_size

    def _code_for(self, key: str, source: str):
        code = self._codes.get(key)
        if code is None:
            code = compile(source, f"<plugin:{key}>", "exec")
            self._codes[key] = code
            while len(self._codes) > self._cache_size:
                self._codes.popitem(last=False)
        else:
            self._codes.move_to_end(key)
        return code

    def handle(self, request: dict):
        try:
            code = self._code_for(request["key"], request["source"])
        except SyntaxError as e:
            _send({"op": "error", "phase": "compile", "error_type": "SyntaxError",
                   "message": f"line {e.lineno}: {e.msg}"})
            return

        state: dict = {}
        namespace = {"__builtins__": _safe_builtins(), "__name__": "plugin", "log": PluginLog()}
        try:
            for name, spec in (request.get("globals") or {}).items():
                namespace[name] = _decode(spec, state)
            args = [_decode(spec, state) for spec in request.get("args") or []]
        except (KeyError, ValueError) as e:
            _send({"op": "error", "phase": "setup", "error_type": type(e).__name__, "message": str(e)})
            return

        try:
            value = asyncio.run(self._execute(code, namespace, request["entry"], args))
        except CapabilityError as e:
            _send({"op": "error", "phase": "execute", "error_type": e.kind, "message": str(e)})
            return
        except Exception as e:
            sys.stderr.write(traceback.format_exc())
            _send({"op": "error", "phase": "execute", "error_type": type(e).__name__,
                   "message": str(e)})
            return

        response = None
        if "response" in state:
            response = state["response"].snapshot()
            # `return response.status(400).json(...)`
            if value is state["response"]:
                value = None
        try:
            payload = json.dumps({"op": "result", "value": value, "response": response})
        except (TypeError, ValueError) as e:
            _send({"op": "error", "phase": "result", "error_type": "TypeError",
                   "message": f"result is not JSON-serializable: {e}"})
            return
        _OUT.write(payload + "\n")
        _OUT.flush()

    async def _execute(self, code, namespace: dict, entry: str, args: list):
        exec(code, namespace)
        fn = namespace.get(entry)
        if not callable(fn):
            raise NameError(f"entry point '{entry}' is not callable")
        result = fn(*args)
        if inspect.isawaitable(result):
            result = await result
        return result


def _limit_memory(megabytes: int):
    if resource is None or megabytes <= 0:
        return
    limit = megabytes * 1024 * 1024
    try:
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    except (ValueError, OSError) as e:
        sys.stderr.write(f"memory limit not applied: {e}\n")


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--memory-mb", type=int, default=0)
    parser.add_argument("--cache-size", type=int, default=512)
    opts = parser.parse_args()
    _limit_memory(opts.memory_mb)

    guest = Guest(opts.cache_size)
    while True:
        request = _receive()
        if request.get("op") != "invoke":
            _send({"op": "error", "phase": "protocol", "error_type": "ProtocolError",
                   "message": f"unexpected op: {request.get('op')}"})
            continue
        guest.handle(request)


if __name__ == "__main__":
    main()
