"""
Out-of-process execution of user scripts.

Each run starts a fresh isolated interpreter (``python -I -B``) in an empty
temporary directory with an empty environment, an address-space limit, a CPU
limit and a zero file-size limit. The child compiles the script with
RestrictedPython, so attribute access, item access and imports go through
guards. The request and reply travel as JSON over stdin/stdout; the child is
killed when the wall-clock timeout expires.
"""

import json
import os
import resource
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from convoflow.config import settings
from convoflow.errors import FatalNodeError, TransientExternalError

logger = structlog.get_logger(__name__)

RUNNER_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "_sandbox_runner.py")


@dataclass
class ScriptResult:
    outputs: Dict[str, Any] = field(default_factory=dict)
    stdout: str = ""


def _limit_resources(memory_mb: int, cpu_seconds: int):
    def apply():
        mem = memory_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (mem, mem))
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds))
        resource.setrlimit(resource.RLIMIT_FSIZE, (0, 0))

    return apply


class Sandbox:
    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        memory_mb: Optional[int] = None,
        network_timeout_seconds: Optional[float] = None,
        python: str = sys.executable,
    ):
        self.timeout_seconds = timeout_seconds or settings.sandbox_timeout_seconds
        self.memory_mb = memory_mb or settings.sandbox_memory_mb
        self.network_timeout_seconds = network_timeout_seconds or settings.sandbox_network_timeout_seconds
        self.python = python

    def run(
        self,
        code: str,
        inputs: Dict[str, Any],
        outputs: List[str],
        timeout_seconds: Optional[float] = None,
        memory_mb: Optional[int] = None,
    ) -> ScriptResult:
        """
        Run ``code`` with ``inputs`` bound as globals and return the declared
        ``outputs``.

        Raises TransientExternalError when the wall-clock timeout expires and
        FatalNodeError when the script raises, is killed by a resource limit
        or replies with something that is not the expected JSON.
        """
        timeout = timeout_seconds or self.timeout_seconds
        memory = memory_mb or self.memory_mb
        request = json.dumps(
            {
                "code": code,
                "inputs": inputs,
                "outputs": outputs,
                "network_timeout": min(self.network_timeout_seconds, timeout),
            },
            default=str,
        )

        with tempfile.TemporaryDirectory(prefix="convoflow-sandbox-") as workdir:
            try:
                proc = subprocess.run(
                    [self.python, "-I", "-B", RUNNER_PATH],
                    input=request,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                    cwd=workdir,
                    env={},
                    preexec_fn=_limit_resources(memory, max(1, int(timeout) + 1)),
                )
            except subprocess.TimeoutExpired as exc:
                logger.warning("sandbox_timeout", timeout_seconds=timeout)
                raise TransientExternalError(f"script timed out after {timeout}s") from exc

        if proc.returncode != 0:
            logger.warning("sandbox_crashed", returncode=proc.returncode, stderr=proc.stderr[-500:])
            raise FatalNodeError(f"script process exited with code {proc.returncode}")
        try:
            reply = json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            raise FatalNodeError("script produced an invalid reply") from exc
        if not reply.get("ok"):
            raise FatalNodeError(f"script failed: {reply.get('error')}")
        return ScriptResult(outputs=reply.get("outputs") or {}, stdout=reply.get("stdout") or "")
