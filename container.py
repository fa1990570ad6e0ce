"""Container engine used by the sandbox runner.

``ContainerEngine`` is the narrow surface the runner depends on: build an
image, run it under limits, fetch logs and stats, remove what was created.
``DockerCliEngine`` drives the docker CLI as child processes; each CLI call
runs in its own process group so that a watchdog can kill the whole group.
"""
import os
import signal
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from config import Settings, parse_memory
from errors import BuildFailure

logger = logging.getLogger("runmeter.container")

# Extra time granted to the CLI after the sandbox deadline before it is killed
KILL_GRACE_SECONDS = 5


@dataclass(frozen=True)
class ResourceLimits:
    memory_bytes: int
    cpus: float
    nofile_soft: int
    nofile_hard: int
    pids_limit: int
    timeout_ms: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResourceLimits":
        return cls(
            memory_bytes=parse_memory(settings.MAX_MEMORY),
            cpus=settings.MAX_CPU,
            nofile_soft=settings.NOFILE_SOFT,
            nofile_hard=settings.NOFILE_HARD,
            pids_limit=settings.PIDS_LIMIT,
            timeout_ms=settings.EXECUTION_TIMEOUT_MS,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "memoryBytes": self.memory_bytes,
            "cpus": self.cpus,
            "nofile": {"soft": self.nofile_soft, "hard": self.nofile_hard},
            "pidsLimit": self.pids_limit,
            "timeoutMs": self.timeout_ms,
        }


@dataclass
class RunOutcome:
    exit_code: Optional[int]
    output: str
    timed_out: bool = False
    oom_killed: bool = False
    # Highest memory reading seen while the container ran, 0 when none was taken
    memory_peak: int = 0


class ContainerEngine:
    async def build(self, context_dir: str, tag: str, timeout_s: float) -> str:
        raise NotImplementedError

    async def run(self, tag: str, name: str, limits: ResourceLimits, env: Dict[str, str]) -> RunOutcome:
        raise NotImplementedError

    async def logs(self, name: str) -> str:
        raise NotImplementedError

    async def stats(self, name: str) -> int:
        """Memory usage of the container in bytes, 0 when unknown."""
        raise NotImplementedError

    async def remove_container(self, name: str) -> None:
        raise NotImplementedError

    async def remove_image(self, tag: str) -> None:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def list_containers(self, prefix: str) -> Dict[str, int]:
        raise NotImplementedError


def isolation_args(limits: ResourceLimits) -> List[str]:
    """docker run flags that isolate one sandbox."""
    return [
        "--network", "none",
        "--read-only",
        "--tmpfs", "/tmp:rw,noexec,nosuid,size=16m",
        "--cap-drop", "ALL",
        "--security-opt", "no-new-privileges",
        "--memory", str(limits.memory_bytes),
        "--memory-swap", str(limits.memory_bytes),
        "--cpus", str(limits.cpus),
        "--pids-limit", str(limits.pids_limit),
        "--ulimit", f"nofile={limits.nofile_soft}:{limits.nofile_hard}",
    ]


_UNITS = {"b": 1, "kb": 1000, "mb": 1000 ** 2, "gb": 1000 ** 3,
          "kib": 1024, "mib": 1024 ** 2, "gib": 1024 ** 3}


def parse_mem_usage(text: str) -> int:
    """Parse the used part of docker's ``12.5MiB / 512MiB`` format."""
    used = text.split("/")[0].strip().lower()
    for unit in sorted(_UNITS, key=len, reverse=True):
        if used.endswith(unit):
            try:
                return int(float(used[:-len(unit)]) * _UNITS[unit])
            except ValueError:
                return 0
    return 0


class DockerCliEngine(ContainerEngine):
    def __init__(self, docker_binary: str = "docker", stats_interval: float = 0.5):
        self.docker = docker_binary
        self.stats_interval = stats_interval

    async def _exec(self, args: Sequence[str], timeout: Optional[float] = None) -> Tuple[int, str]:
        """Run one docker CLI command; stdout and stderr are combined."""
        proc = await asyncio.create_subprocess_exec(
            self.docker, *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            output, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        finally:
            # Reached on timeout and on cancellation alike
            if proc.returncode is None:
                self._kill_group(proc)
                await proc.wait()
        return proc.returncode, output.decode("utf-8", errors="replace")

    @staticmethod
    def _kill_group(proc):
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def build(self, context_dir: str, tag: str, timeout_s: float) -> str:
        try:
            code, output = await self._exec(["build", "--quiet", "--tag", tag, context_dir], timeout=timeout_s)
        except asyncio.TimeoutError:
            raise BuildFailure(f"Image build exceeded {timeout_s:.0f}s")
        except OSError as e:
            raise BuildFailure(f"Docker is not available: {e}")
        if code != 0:
            raise BuildFailure(f"Docker build failed: {output.strip()[-2000:]}", logs=output.splitlines())
        return output.strip()

    async def run(self, tag: str, name: str, limits: ResourceLimits, env: Dict[str, str]) -> RunOutcome:
        env_args: List[str] = []
        for key, value in env.items():
            env_args.extend(["--env", f"{key}={value}"])

        code, output = await self._exec(["create", "--name", name, *isolation_args(limits), *env_args, tag], timeout=30)
        if code != 0:
            raise BuildFailure(f"Failed to create container {name}: {output.strip()}", logs=output.splitlines())

        timeout_s = limits.timeout_ms / 1000
        samples: List[int] = []
        sampler = asyncio.create_task(self._sample_memory(name, samples))
        timed_out = False
        try:
            await self._exec(["start", "--attach", name], timeout=timeout_s)
        except asyncio.TimeoutError:
            timed_out = True
        finally:
            sampler.cancel()
            await asyncio.gather(sampler, return_exceptions=True)
        memory_peak = max(samples, default=0)

        if timed_out:
            # The CLI group is gone; the container itself must be killed separately
            await self._exec(["kill", name], timeout=KILL_GRACE_SECONDS)
            return RunOutcome(exit_code=None, output=await self.logs(name), timed_out=True,
                              memory_peak=memory_peak)

        code, state = await self._exec(
            ["inspect", "--format", "{{.State.ExitCode}} {{.State.OOMKilled}}", name], timeout=10
        )
        exit_code, oom_killed = None, False
        if code == 0:
            parts = state.split()
            if len(parts) == 2:
                exit_code = int(parts[0])
                oom_killed = parts[1].lower() == "true"
        return RunOutcome(exit_code=exit_code, output=await self.logs(name), oom_killed=oom_killed,
                          memory_peak=memory_peak)

    async def _sample_memory(self, name: str, samples: List[int]):
        """Poll memory usage while the container runs.

        Best-effort: a run shorter than one interval yields no reading.
        """
        while True:
            await asyncio.sleep(self.stats_interval)
            try:
                samples.append(await self.stats(name))
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"Memory sampling of {name} stopped: {e}")
                return

    async def logs(self, name: str) -> str:
        code, output = await self._exec(["logs", "--tail", "1000", name], timeout=10)
        return output if code == 0 else ""

    async def stats(self, name: str) -> int:
        code, output = await self._exec(["stats", "--no-stream", "--format", "{{.MemUsage}}", name], timeout=10)
        return parse_mem_usage(output) if code == 0 else 0

    async def remove_container(self, name: str) -> None:
        code, output = await self._exec(["rm", "--force", name], timeout=30)
        if code != 0 and "No such container" not in output:
            raise RuntimeError(f"Failed to remove container {name}: {output.strip()}")

    async def remove_image(self, tag: str) -> None:
        code, output = await self._exec(["rmi", "--force", tag], timeout=60)
        if code != 0 and "No such image" not in output:
            raise RuntimeError(f"Failed to remove image {tag}: {output.strip()}")

    async def ping(self) -> bool:
        try:
            code, _ = await self._exec(["version", "--format", "{{.Server.Version}}"], timeout=10)
        except (OSError, asyncio.TimeoutError):
            return False
        return code == 0

    async def list_containers(self, prefix: str) -> Dict[str, int]:
        code, output = await self._exec(
            ["ps", "--all", "--filter", f"name={prefix}", "--format", "{{.State}}"], timeout=10
        )
        if code != 0:
            raise RuntimeError(f"Failed to list containers: {output.strip()}")
        states = [line.strip() for line in output.splitlines() if line.strip()]
        return {"total": len(states), "running": sum(1 for s in states if s == "running")}
