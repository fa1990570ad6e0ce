"""Isolated execution of tenant code, one throwaway container per call."""
import os
import re
import json
import time
import uuid
import shutil
import asyncio
import logging
import tempfile
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from artifacts import ArtifactStore
from container import ContainerEngine, ResourceLimits, RunOutcome, KILL_GRACE_SECONDS
from errors import (
    SandboxError, TimeoutFailure, RuntimeCrash, ResourceExceeded
)
from models import ExecutionRequest, ExecutionResult

logger = logging.getLogger("runmeter.sandbox")

NAME_PREFIX = "api-exec-"
SIGKILL_EXIT_CODE = 137

_ERROR_LINE = re.compile(r"^\s*(?:Uncaught\s+)?(?:[A-Za-z_$][\w$]*)?(?:Error|Exception)\b.*")

DOCKERFILE_TEMPLATE = """FROM {base_image}
WORKDIR /app
COPY {code_filename} request.json ./
USER node
CMD ["sh", "-c", {command}]
"""


def parse_response(output: str) -> Any:
    """Structured response from combined process output.

    The last top-level JSON object (one opening at column 0) wins. Without
    one, the raw output is returned as an opaque text response.
    """
    lines = output.splitlines()
    decoder = json.JSONDecoder()
    for index in range(len(lines) - 1, -1, -1):
        if not lines[index].startswith("{"):
            continue
        try:
            value, _ = decoder.raw_decode("\n".join(lines[index:]))
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return {"message": "API executed successfully", "logs": output}


def crash_message(lines: List[str], exit_code: Optional[int]) -> str:
    for line in reversed(lines):
        if _ERROR_LINE.match(line):
            return line.strip()
    return f"Process exited with code {exit_code}"


class SandboxRunner:
    """Runs code fetched by reference inside a fresh, locked-down container.

    ``execute`` never raises; every failure is encoded in the returned
    ExecutionResult. The workspace, the image and the container belonging
    to a call are removed on every path.
    """

    def __init__(self, artifacts: ArtifactStore, engine: ContainerEngine, limits: ResourceLimits,
                 base_image: str = "node:18-alpine", build_timeout_ms: int = 120000,
                 concurrency: int = 8, workdir: Optional[str] = None,
                 code_filename: str = "api.js", runtime_command: str = "node api.js < request.json",
                 kill_grace_s: float = KILL_GRACE_SECONDS):
        self.artifacts = artifacts
        self.engine = engine
        self.limits = limits
        self.base_image = base_image
        self.build_timeout_ms = build_timeout_ms
        self.workdir = workdir or None
        self.code_filename = code_filename
        self.runtime_command = runtime_command
        self.kill_grace_s = kill_grace_s
        self._semaphore = asyncio.Semaphore(concurrency)
        self.active_executions = 0
        self.total_executions = 0
        self.failed_executions = 0

    async def execute(self, code_ref: str, request: ExecutionRequest) -> ExecutionResult:
        execution_id = str(uuid.uuid4())
        start_time = time.monotonic()
        self.total_executions += 1
        logger.info(f"[{execution_id}] Starting execution of {code_ref}")

        try:
            async with self._semaphore:
                self.active_executions += 1
                try:
                    result = await self._run(execution_id, code_ref, request, start_time)
                finally:
                    self.active_executions -= 1
            logger.info(f"[{execution_id}] Execution completed in {result.execution_time_ms}ms")
            return result

        except SandboxError as e:
            self.failed_executions += 1
            logger.warning(f"[{execution_id}] Execution failed ({e.kind}): {e.message}")
            return self._failure(execution_id, e.message, e.kind, e.logs, e.exit_code, start_time)

        except Exception as e:
            self.failed_executions += 1
            logger.error(f"[{execution_id}] Unexpected sandbox error: {e}", exc_info=True)
            return self._failure(execution_id, str(e) or type(e).__name__, SandboxError.kind,
                                 [], None, start_time)

    @staticmethod
    def _failure(execution_id: str, message: str, kind: str, logs: List[str],
                 exit_code: Optional[int], start_time: float) -> ExecutionResult:
        return ExecutionResult(
            execution_id=execution_id,
            success=False,
            error=message,
            error_kind=kind,
            logs=logs,
            exit_code=exit_code,
            execution_time_ms=int((time.monotonic() - start_time) * 1000),
        )

    async def _run(self, execution_id: str, code_ref: str, request: ExecutionRequest,
                   start_time: float) -> ExecutionResult:
        code = await self.artifacts.fetch_code(code_ref)

        async with self._workspace(execution_id) as (workspace, name):
            self._write_workspace(workspace, code, request)

            await self.engine.build(workspace, name, self.build_timeout_ms / 1000)
            logger.debug(f"[{execution_id}] Image {name} built")

            env = {"NODE_ENV": "production", "EXECUTION_ID": execution_id}
            deadline = self.limits.timeout_ms / 1000
            try:
                # Watchdog over the engine's own timeout handling
                outcome = await asyncio.wait_for(
                    self.engine.run(name, name, self.limits, env),
                    timeout=deadline + self.kill_grace_s
                )
            except asyncio.TimeoutError:
                outcome = RunOutcome(exit_code=None, output="", timed_out=True)

            lines = [line for line in outcome.output.splitlines() if line.strip()]
            self._check_outcome(outcome, lines)

            # The container has exited here, so a late reading is only a fallback
            memory_usage = outcome.memory_peak or await self.engine.stats(name)

        return ExecutionResult(
            execution_id=execution_id,
            success=True,
            response=parse_response(outcome.output),
            logs=lines,
            exit_code=outcome.exit_code,
            execution_time_ms=int((time.monotonic() - start_time) * 1000),
            memory_usage_bytes=memory_usage,
        )

    def _check_outcome(self, outcome: RunOutcome, lines: List[str]):
        if outcome.timed_out:
            raise TimeoutFailure(
                f"Execution timed out after {self.limits.timeout_ms}ms", logs=lines
            )
        if outcome.oom_killed or outcome.exit_code == SIGKILL_EXIT_CODE:
            raise ResourceExceeded(
                f"Execution exceeded its resource limits (memory {self.limits.memory_bytes} bytes)",
                logs=lines, exit_code=outcome.exit_code
            )
        if outcome.exit_code != 0:
            raise RuntimeCrash(crash_message(lines, outcome.exit_code), logs=lines, exit_code=outcome.exit_code)

    def _write_workspace(self, workspace: str, code: bytes, request: ExecutionRequest):
        with open(os.path.join(workspace, self.code_filename), "wb") as f:
            f.write(code)
        with open(os.path.join(workspace, "request.json"), "w", encoding="utf-8") as f:
            f.write(request.to_json())
        with open(os.path.join(workspace, "Dockerfile"), "w", encoding="utf-8") as f:
            f.write(DOCKERFILE_TEMPLATE.format(
                base_image=self.base_image,
                code_filename=self.code_filename,
                command=json.dumps(self.runtime_command),
            ))

    @asynccontextmanager
    async def _workspace(self, execution_id: str):
        """Workspace directory plus image/container name, released on exit."""
        name = f"{NAME_PREFIX}{execution_id}"
        workspace = tempfile.mkdtemp(prefix=f"{name}-", dir=self.workdir)
        try:
            yield workspace, name
        finally:
            await self._cleanup(execution_id, workspace, name)

    async def _cleanup(self, execution_id: str, workspace: str, name: str):
        try:
            await self.engine.remove_container(name)
        except Exception as e:
            logger.warning(f"[{execution_id}] Failed to remove container {name}: {e}")
        try:
            await self.engine.remove_image(name)
        except Exception as e:
            logger.warning(f"[{execution_id}] Failed to remove image {name}: {e}")
        shutil.rmtree(workspace, ignore_errors=True)

    async def health_check(self) -> Dict[str, Any]:
        if await self.engine.ping():
            return {"status": "healthy", "docker": "connected"}
        return {"status": "unhealthy", "docker": "disconnected"}

    async def get_stats(self) -> Dict[str, Any]:
        counts = await self.engine.list_containers(NAME_PREFIX)
        return {
            "totalContainers": counts.get("total", 0),
            "runningContainers": counts.get("running", 0),
            "activeExecutions": self.active_executions,
            "totalExecutions": self.total_executions,
            "failedExecutions": self.failed_executions,
            "baseImage": self.base_image,
            "limits": self.limits.to_dict(),
        }
