"""
Sandbox pool — long-lived guest interpreter processes that run plugin code.

Each worker is a separate Python process (`-I -B`, clean environment, empty
scratch directory, optional address-space limit) speaking JSON lines over its
stdin/stdout. A worker serves one invocation at a time. The invocation timeout
is enforced here: on expiry the process is killed, replaced, and
ExecutionTimeout is raised. Late output from a killed worker is never read.
"""

import asyncio
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional

from config import (
    COMPILE_CACHE_SIZE, DEBUG_SANDBOX, MAX_MESSAGE_BYTES, SANDBOX_MEMORY_LIMIT_MB,
    SANDBOX_PYTHON, SANDBOX_WORKERS,
)
from plugin_runtime.errors import ExecutionTimeout, PluginExecutionError

logger = logging.getLogger(__name__)

GUEST_SCRIPT = Path(__file__).parent / "guest.py"

CallHandler = Callable[[str, str, list, dict], Awaitable[object]]
LogHandler = Callable[[str, str], None]


# ── Environment Stripping ──

_SECRET_ENV_PREFIXES = (
    "PLUGIN_HOST_", "AWS_", "AZURE_", "GOOGLE_", "GCP_", "OPENAI_", "ANTHROPIC_",
    "STRIPE_", "DATABASE_", "SUPABASE_", "REDIS_", "GITHUB_", "PYTHON",
)

_SECRET_ENV_NAMES = {
    "PASSWORD", "SECRET", "TOKEN", "CREDENTIAL",
    "PRIVATE_KEY", "API_KEY", "DSN",
}

_PASSTHROUGH_ENV = ("PATH", "LANG", "LC_ALL", "LC_CTYPE", "SYSTEMROOT", "TZ")


def _make_clean_env(workdir: str) -> dict[str, str]:
    """Minimal environment for a guest: locale and PATH only, secrets never."""
    clean = {}
    for key in _PASSTHROUGH_ENV:
        val = os.environ.get(key)
        if val is None:
            continue
        if any(key.startswith(prefix) for prefix in _SECRET_ENV_PREFIXES):
            continue
        if any(word in key.upper() for word in _SECRET_ENV_NAMES):
            continue
        clean[key] = val
    clean.update({
        "HOME": workdir,
        "TMPDIR": workdir,
        "PYTHONIOENCODING": "utf-8",
        "PYTHONDONTWRITEBYTECODE": "1",
    })
    return clean


class SandboxWorker:
    """One guest process and its pipes."""

    def __init__(self, index: int, python: str = SANDBOX_PYTHON,
                 memory_limit_mb: int = SANDBOX_MEMORY_LIMIT_MB,
                 max_message_bytes: int = MAX_MESSAGE_BYTES,
                 cache_size: int = COMPILE_CACHE_SIZE):
        self.index = index
        self._python = python
        self._memory_limit_mb = memory_limit_mb
        self._max_message_bytes = max_message_bytes
        self._cache_size = cache_size
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._workdir: Optional[str] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self.invocations = 0
        self.restarts = 0

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self):
        if self.alive:
            return
        self._workdir = tempfile.mkdtemp(prefix="plugin-sandbox-")
        self._proc = await asyncio.create_subprocess_exec(
            self._python, "-I", "-B", str(GUEST_SCRIPT),
            "--memory-mb", str(self._memory_limit_mb),
            "--cache-size", str(self._cache_size),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._workdir,
            env=_make_clean_env(self._workdir),
            limit=self._max_message_bytes,
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc))
        logger.debug("Sandbox worker %d started (pid %s)", self.index, self._proc.pid)

    async def _drain_stderr(self, proc: asyncio.subprocess.Process):
        try:
            while True:
                line = await proc.stderr.readline()
                if not line:
                    break
                if DEBUG_SANDBOX:
                    logger.info("[sandbox %d] %s", self.index, line.decode(errors="replace").rstrip())
                else:
                    logger.debug("[sandbox %d] %s", self.index, line.decode(errors="replace").rstrip())
        except (asyncio.CancelledError, ValueError):
            pass

    async def kill(self):
        proc, self._proc = self._proc, None
        if proc is not None and proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
        self._stderr_task = None
        if self._workdir:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None

    async def restart(self):
        await self.kill()
        self.restarts += 1
        await self.start()

    async def _write(self, message: dict):
        self._proc.stdin.write((json.dumps(message, default=str) + "\n").encode())
        await self._proc.stdin.drain()

    async def _read(self) -> dict:
        line = await self._proc.stdout.readline()
        if not line:
            raise PluginExecutionError("Sandbox worker exited unexpectedly", error_type="SandboxCrash")
        return json.loads(line)

    async def _exchange(self, request: dict, on_call: CallHandler, on_log: LogHandler) -> dict:
        await self._write(request)
        while True:
            message = await self._read()
            op = message.get("op")
            if op == "call":
                try:
                    value = await on_call(message.get("target", ""), message.get("method", ""),
                                          message.get("args") or [], message.get("kwargs") or {})
                    reply = {"op": "reply", "value": value}
                    json.dumps(reply)
                except Exception as e:
                    reply = {"op": "reply", "error": {"type": type(e).__name__, "message": str(e)}}
                await self._write(reply)
            elif op == "log":
                on_log(message.get("level", "info"), message.get("message", ""))
            elif op in ("result", "error"):
                return message
            else:
                logger.warning("Sandbox worker %d sent unknown op %r", self.index, op)

    async def invoke(self, request: dict, on_call: CallHandler, on_log: LogHandler,
                     timeout: float) -> dict:
        """Run one request to completion. Kills and replaces the worker on timeout or crash."""
        await self.start()
        self.invocations += 1
        try:
            return await asyncio.wait_for(self._exchange(request, on_call, on_log), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Sandbox worker %d timed out after %.1fs; restarting", self.index, timeout)
            await self.restart()
            raise ExecutionTimeout(f"Plugin code exceeded {timeout:.1f}s", timeout=timeout)
        except asyncio.CancelledError:
            # Worker is mid-conversation; it must not serve another request
            await self.kill()
            raise
        except (PluginExecutionError, ValueError, ConnectionError) as e:
            # Crash, oversized message or malformed JSON
            logger.error("Sandbox worker %d failed: %s; restarting", self.index, e)
            await self.restart()
            if isinstance(e, PluginExecutionError):
                raise
            raise PluginExecutionError(f"Sandbox protocol error: {e}", error_type="SandboxError")


class SandboxPool:
    """Bounded pool of sandbox workers; one invocation per worker at a time."""

    def __init__(self, size: int = SANDBOX_WORKERS, python: str = SANDBOX_PYTHON,
                 memory_limit_mb: int = SANDBOX_MEMORY_LIMIT_MB,
                 max_message_bytes: int = MAX_MESSAGE_BYTES,
                 cache_size: int = COMPILE_CACHE_SIZE):
        self.size = max(1, size)
        self._workers = [
            SandboxWorker(i, python=python, memory_limit_mb=memory_limit_mb,
                          max_message_bytes=max_message_bytes, cache_size=cache_size)
            for i in range(self.size)
        ]
        self._idle: Optional[asyncio.Queue] = None

    def _queue(self) -> asyncio.Queue:
        if self._idle is None:
            self._idle = asyncio.Queue()
            for worker in self._workers:
                self._idle.put_nowait(worker)
        return self._idle

    async def start(self):
        """Spawn every worker up front (otherwise they start on first use)."""
        await asyncio.gather(*(w.start() for w in self._workers))
        logger.info("Sandbox pool started with %d worker(s)", self.size)

    async def run(self, request: dict, on_call: CallHandler, on_log: LogHandler,
                  timeout: float) -> dict:
        queue = self._queue()
        worker = await queue.get()
        try:
            return await worker.invoke(request, on_call, on_log, timeout)
        finally:
            queue.put_nowait(worker)

    async def shutdown(self):
        for worker in self._workers:
            await worker.kill()
        self._idle = None
        logger.info("Sandbox pool stopped")

    def stats(self) -> dict:
        return {
            "workers": self.size,
            "alive": sum(1 for w in self._workers if w.alive),
            "invocations": sum(w.invocations for w in self._workers),
            "restarts": sum(w.restarts for w in self._workers),
        }
