"""
Tests for resource limits and the docker CLI engine, with the CLI scripted.
"""

import shutil
import signal
import asyncio
import pytest

from config import parse_memory
from container import DockerCliEngine, ResourceLimits, isolation_args, parse_mem_usage
from errors import BuildFailure

from conftest import make_settings


class ScriptedDocker(DockerCliEngine):
    """Replies to docker subcommands from a table instead of spawning processes."""

    def __init__(self, replies, delays=None, stats_interval=0.5):
        super().__init__("docker", stats_interval=stats_interval)
        self.replies = replies
        self.delays = delays or {}
        self.calls = []

    async def _exec(self, args, timeout=None):
        self.calls.append(list(args))
        if args[0] in self.delays:
            await asyncio.sleep(self.delays[args[0]])
        reply = self.replies.get(args[0], (0, ""))
        if isinstance(reply, BaseException):
            raise reply
        return reply


class TestLimits:
    """Test limit parsing and isolation flags."""

    def test_from_settings(self):
        """Memory strings are converted to bytes."""
        limits = ResourceLimits.from_settings(make_settings(MAX_MEMORY="256m", MAX_CPU=0.25))
        assert limits.memory_bytes == 256 * 1024 * 1024
        assert limits.cpus == 0.25
        assert limits.timeout_ms == 2000

    def test_parse_memory_fallback(self):
        """Unparseable values fall back to 512m."""
        assert parse_memory("1g") == 1024 ** 3
        assert parse_memory("lots") == 512 * 1024 ** 2

    def test_isolation_flags(self, limits):
        """No network, read-only root, no capabilities and hard ceilings."""
        args = isolation_args(limits)
        assert args[args.index("--network") + 1] == "none"
        assert "--read-only" in args
        assert args[args.index("--cap-drop") + 1] == "ALL"
        assert args[args.index("--memory") + 1] == str(limits.memory_bytes)
        assert args[args.index("--memory-swap") + 1] == str(limits.memory_bytes)
        assert args[args.index("--pids-limit") + 1] == "64"
        assert args[args.index("--ulimit") + 1] == "nofile=1024:2048"

    def test_parse_mem_usage(self):
        """docker stats memory strings are read in bytes."""
        assert parse_mem_usage("12.5MiB / 512MiB") == int(12.5 * 1024 ** 2)
        assert parse_mem_usage("900kB / 1GiB") == 900000
        assert parse_mem_usage("--") == 0


class TestDockerCliEngine:
    """Test CLI call sequencing and outcome decoding."""

    @pytest.mark.asyncio
    async def test_run_clean_exit(self, limits):
        """Exit code and OOM flag come from inspect; output from logs."""
        engine = ScriptedDocker({"inspect": (0, "0 false\n"), "logs": (0, '{"ok": true}\n')})
        outcome = await engine.run("img", "api-exec-1", limits, {"EXECUTION_ID": "1"})

        assert outcome.exit_code == 0
        assert not outcome.oom_killed
        assert outcome.output == '{"ok": true}\n'
        create = engine.calls[0]
        assert create[:3] == ["create", "--name", "api-exec-1"]
        assert "EXECUTION_ID=1" in create
        assert create[-1] == "img"

    @pytest.mark.asyncio
    async def test_run_oom(self, limits):
        """OOMKilled is reported."""
        engine = ScriptedDocker({"inspect": (0, "137 true")})
        outcome = await engine.run("img", "c", limits, {})
        assert outcome.exit_code == 137
        assert outcome.oom_killed

    @pytest.mark.asyncio
    async def test_run_timeout_kills_container(self, limits):
        """A start that outlives the deadline kills the container."""
        engine = ScriptedDocker({"start": asyncio.TimeoutError(), "logs": (0, "partial\n")})
        outcome = await engine.run("img", "c", limits, {})
        assert outcome.timed_out
        assert outcome.output == "partial\n"
        assert ["kill", "c"] in engine.calls

    @pytest.mark.asyncio
    async def test_create_failure_is_build_failure(self, limits):
        """A container that cannot be created is reported as a build failure."""
        engine = ScriptedDocker({"create": (125, "Unable to find image 'img:latest' locally\n")})
        with pytest.raises(BuildFailure) as info:
            await engine.run("img", "c", limits, {})
        assert "Unable to find image" in info.value.message
        assert not any(call[0] == "start" for call in engine.calls)

    @pytest.mark.asyncio
    async def test_memory_sampled_while_running(self, limits):
        """Memory is read while the container runs, not after it exited."""
        engine = ScriptedDocker(
            {"inspect": (0, "0 false"), "stats": (0, "12MiB / 512MiB")},
            delays={"start": 0.2},
            stats_interval=0.02,
        )
        outcome = await engine.run("img", "c", limits, {})
        assert outcome.memory_peak == 12 * 1024 ** 2
        assert ["stats", "--no-stream", "--format", "{{.MemUsage}}", "c"] in engine.calls

    @pytest.mark.asyncio
    async def test_short_run_has_no_memory_peak(self, limits):
        """A run shorter than one sampling interval reports no peak."""
        engine = ScriptedDocker({"inspect": (0, "0 false"), "stats": (0, "12MiB / 512MiB")})
        outcome = await engine.run("img", "c", limits, {})
        assert outcome.memory_peak == 0

    @pytest.mark.asyncio
    async def test_build_failure(self):
        """A failing build raises with its output."""
        engine = ScriptedDocker({"build": (1, "Step 1/4\nerror: pull access denied\n")})
        with pytest.raises(BuildFailure) as info:
            await engine.build("/tmp/x", "img", 10)
        assert "pull access denied" in info.value.message

    @pytest.mark.asyncio
    async def test_build_timeout(self):
        """A build over its deadline is a build failure."""
        engine = ScriptedDocker({"build": asyncio.TimeoutError()})
        with pytest.raises(BuildFailure):
            await engine.build("/tmp/x", "img", 10)

    @pytest.mark.asyncio
    async def test_remove_missing_is_fine(self):
        """Removing what is already gone is not an error."""
        engine = ScriptedDocker({"rm": (1, "Error: No such container: c"), "rmi": (1, "Error: No such image: c")})
        await engine.remove_container("c")
        await engine.remove_image("c")

    @pytest.mark.asyncio
    async def test_remove_failure_raises(self):
        """Other removal errors propagate."""
        engine = ScriptedDocker({"rm": (1, "permission denied")})
        with pytest.raises(RuntimeError):
            await engine.remove_container("c")

    @pytest.mark.asyncio
    async def test_ping_without_docker(self):
        """A missing binary reads as disconnected."""
        engine = ScriptedDocker({"version": FileNotFoundError("docker")})
        assert await engine.ping() is False

    @pytest.mark.asyncio
    async def test_list_containers(self):
        """Containers are counted by state."""
        engine = ScriptedDocker({"ps": (0, "running\nexited\nrunning\n")})
        assert await engine.list_containers("api-exec-") == {"total": 3, "running": 2}


@pytest.mark.skipif(shutil.which("sleep") is None, reason="needs a sleep binary")
class TestProcessGroups:
    """Test that CLI children never outlive their call."""

    @pytest.fixture
    def spawned(self, monkeypatch):
        procs = []
        original = asyncio.create_subprocess_exec

        async def recording(*args, **kwargs):
            proc = await original(*args, **kwargs)
            procs.append(proc)
            return proc

        monkeypatch.setattr(asyncio, "create_subprocess_exec", recording)
        return procs

    @pytest.mark.asyncio
    async def test_cancelled_call_kills_child(self, spawned):
        """Cancelling a call kills and reaps its process group."""
        engine = DockerCliEngine("sleep")
        task = asyncio.create_task(engine._exec(["30"]))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(spawned) == 1
        assert spawned[0].returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_timed_out_call_kills_child(self, spawned):
        """A call over its timeout kills and reaps its process group."""
        engine = DockerCliEngine("sleep")
        with pytest.raises(asyncio.TimeoutError):
            await engine._exec(["30"], timeout=0.2)
        assert spawned[0].returncode == -signal.SIGKILL
