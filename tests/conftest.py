"""Shared fixtures: settings, in-memory backends and a scripted container engine."""
import os

# Must be in place before config is imported anywhere
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("TOKEN_SECRET", "test-secret")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("EVENT_LOG_BACKEND", "memory")
os.environ.setdefault("RUN_BILLING_WORKER", "false")

import asyncio
from typing import Dict, List, Optional

import pytest

from artifacts import InMemoryArtifactStore
from config import Settings
from container import ContainerEngine, ResourceLimits, RunOutcome
from db import MemoryUsageStore
from event_log import MemoryEventLog
from models import ApiRecord
from realtime import MemoryRealtimeStore


class FakeEngine(ContainerEngine):
    """Container engine that replays a scripted outcome.

    A run slower than the configured timeout reports ``timed_out`` after
    sleeping for the timeout, as the docker engine does; ``hang`` ignores
    the timeout entirely.
    """

    def __init__(self, outcome: Optional[RunOutcome] = None, build_error: Optional[Exception] = None,
                 run_seconds: float = 0.0, hang: bool = False, memory: int = 4096, healthy: bool = True):
        self.outcome = outcome or RunOutcome(exit_code=0, output='{"ok": true}\n')
        self.build_error = build_error
        self.run_seconds = run_seconds
        self.hang = hang
        self.memory = memory
        self.healthy = healthy
        self.images = set()
        self.containers = set()
        self.workspaces: List[Dict[str, str]] = []
        self.runs: List[Dict[str, object]] = []

    async def build(self, context_dir: str, tag: str, timeout_s: float) -> str:
        files = {}
        for name in os.listdir(context_dir):
            with open(os.path.join(context_dir, name), "r", encoding="utf-8") as f:
                files[name] = f.read()
        self.workspaces.append({"dir": context_dir, **files})
        if self.build_error is not None:
            raise self.build_error
        self.images.add(tag)
        return tag

    async def run(self, tag: str, name: str, limits: ResourceLimits, env: Dict[str, str]) -> RunOutcome:
        self.containers.add(name)
        self.runs.append({"tag": tag, "name": name, "limits": limits, "env": env})
        if self.hang:
            await asyncio.sleep(3600)
        timeout_s = limits.timeout_ms / 1000
        if self.run_seconds > timeout_s:
            await asyncio.sleep(timeout_s)
            return RunOutcome(exit_code=None, output=self.outcome.output, timed_out=True)
        if self.run_seconds:
            await asyncio.sleep(self.run_seconds)
        return self.outcome

    async def logs(self, name: str) -> str:
        return self.outcome.output

    async def stats(self, name: str) -> int:
        return self.memory

    async def remove_container(self, name: str) -> None:
        self.containers.discard(name)

    async def remove_image(self, tag: str) -> None:
        self.images.discard(tag)

    async def ping(self) -> bool:
        return self.healthy

    async def list_containers(self, prefix: str) -> Dict[str, int]:
        names = [n for n in self.containers if n.startswith(prefix)]
        return {"total": len(names), "running": 0}


def make_settings(**overrides) -> Settings:
    values = {
        "DEBUG": True,
        "TOKEN_SECRET": "test-secret",
        "STORAGE_BACKEND": "memory",
        "EVENT_LOG_BACKEND": "memory",
        "RUN_BILLING_WORKER": False,
        "EXECUTION_TIMEOUT_MS": 2000,
        "BILLING_INTERVAL_MS": 50,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def limits():
    return ResourceLimits(
        memory_bytes=512 * 1024 * 1024,
        cpus=0.5,
        nofile_soft=1024,
        nofile_hard=2048,
        pids_limit=64,
        timeout_ms=2000,
    )


@pytest.fixture
def artifacts():
    store = InMemoryArtifactStore()
    store.put("hello", "console.log(JSON.stringify({hello: 'world'}))")
    return store


@pytest.fixture
def usage_store():
    store = MemoryUsageStore()
    store.register_api(ApiRecord(id="api-1", name="Echo", current_version="1.0.0", code_ref="hello"))
    return store


@pytest.fixture
def event_log():
    return MemoryEventLog(stream_key="usage_logs", claim_idle_ms=60000)


@pytest.fixture
def realtime():
    return MemoryRealtimeStore(ttl_seconds=3600)
