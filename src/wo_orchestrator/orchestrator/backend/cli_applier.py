"""Subprocess-based code applier driven by a command template."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
from pathlib import Path

from wo_orchestrator.orchestrator.backend.base import ApplyRequest, ApplyResult
from wo_orchestrator.orchestrator.errors import ApplyError

logger = logging.getLogger(__name__)

_TAIL_CHARS = 2_000
_CHANGED_PREFIX = "changed: "
_UNSAFE_TARGET_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class CliCodeApplier:
    """Run a code-editing tool against the target's working directory.

    The template may use `{workdir}`, `{payload_file}` and `{branch}`; the
    payload file holds the generated files as JSON. Lines printed as
    `changed: <path>` are reported back as changed files.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir_root: Path,
        timeout_seconds: int = 600,
    ) -> None:
        self.command_template = command_template
        self.workdir_root = workdir_root
        self.timeout_seconds = timeout_seconds

    async def apply(self, request: ApplyRequest) -> ApplyResult:
        workdir = self.workdir_root / _UNSAFE_TARGET_CHARS.sub("_", request.target_id)
        payload_file = workdir / ".wo_inbox" / f"{request.job_id}.json"
        payload_file.parent.mkdir(parents=True, exist_ok=True)
        payload_file.write_text(
            json.dumps(
                {
                    "job_id": request.job_id,
                    "branch": request.branch_name,
                    "summary": request.generation.summary,
                    "files": request.generation.files,
                },
                ensure_ascii=False,
                indent=2,
            ),
            "utf-8",
        )

        argv = _build_run_args(
            command_template=self.command_template,
            workdir=workdir,
            payload_file=payload_file,
            branch=request.branch_name,
        )
        env = os.environ.copy()
        env["WO_ORCHESTRATOR_JOB_ID"] = request.job_id
        env["WO_ORCHESTRATOR_BRANCH"] = request.branch_name

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(workdir),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise ApplyError(f"Code applier command not found: {argv[0]}") from error
        except OSError as error:
            raise ApplyError(f"Code applier failed to start: {error}") from error

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            process.kill()
            await process.wait()
            raise ApplyError(
                f"Code applier timed out after {self.timeout_seconds}s",
            ) from error

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1
        if exit_code != 0:
            logger.warning(
                "Code applier exited with %d for %s: %s",
                exit_code,
                request.job_id,
                stderr_text[-_TAIL_CHARS:],
            )
            raise ApplyError(
                f"Code applier exited with code {exit_code}: "
                f"{(stderr_text or stdout_text)[-_TAIL_CHARS:].strip()}",
                exit_code=exit_code,
            )

        changed = tuple(
            line[len(_CHANGED_PREFIX) :].strip()
            for line in stdout_text.splitlines()
            if line.startswith(_CHANGED_PREFIX)
        )
        return ApplyResult(branch_name=request.branch_name, changed_files=changed, exit_code=0)


def _build_run_args(
    *,
    command_template: str,
    workdir: Path,
    payload_file: Path,
    branch: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ApplyError("Code applier command template is empty.")
    if "{payload_file}" not in stripped:
        raise ApplyError("Code applier command template must include {payload_file}.")

    try:
        rendered = stripped.format(
            workdir=shlex.quote(str(workdir)),
            payload_file=shlex.quote(str(payload_file)),
            branch=shlex.quote(branch),
        )
    except KeyError as error:
        raise ApplyError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ApplyError("Code applier command template rendered empty command.")
    return argv
