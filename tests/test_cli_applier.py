from __future__ import annotations

import asyncio
import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from wo_orchestrator.orchestrator.backend import ApplyRequest, CliCodeApplier, GenerationResult
from wo_orchestrator.orchestrator.backend.echo_editor import main as echo_editor_main
from wo_orchestrator.orchestrator.errors import ApplyError

pytestmark = [
    allure.epic("Execution Stages"),
    allure.feature("Code Applier"),
]

_PYTHON = shlex.quote(sys.executable)


def _request(files: dict[str, str] | None = None, *, target_id: str = "svc/api") -> ApplyRequest:
    return ApplyRequest(
        job_id="J1",
        target_id=target_id,
        branch_name="wo/j1-add-login",
        generation=GenerationResult(
            files=files if files is not None else {"src/login.py": "print('hi')\n"},
            summary="Add login",
        ),
    )


def test_echo_editor_writes_files_and_reports_changes(tmp_path: Path) -> None:
    applier = CliCodeApplier(
        command_template=(
            f"{_PYTHON} -m wo_orchestrator.orchestrator.backend.echo_editor "
            "--payload-file {payload_file} --workdir {workdir}"
        ),
        workdir_root=tmp_path,
        timeout_seconds=30,
    )

    result = asyncio.run(applier.apply(_request()))

    workdir = tmp_path / "svc_api"
    assert result.changed_files == ("src/login.py",)
    assert result.branch_name == "wo/j1-add-login"
    assert (workdir / "src" / "login.py").read_text("utf-8") == "print('hi')\n"
    payload = json.loads((workdir / ".wo_inbox" / "J1.json").read_text("utf-8"))
    assert payload["branch"] == "wo/j1-add-login"
    assert payload["summary"] == "Add login"


def test_non_zero_exit_raises_apply_error_with_stderr_tail(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.write('merge conflict in src/login.py'); sys.exit(4)"
    applier = CliCodeApplier(
        command_template=f"{_PYTHON} -c {shlex.quote(script)} {{payload_file}}",
        workdir_root=tmp_path,
    )

    with pytest.raises(ApplyError, match="merge conflict") as error_info:
        asyncio.run(applier.apply(_request()))

    assert error_info.value.exit_code == 4


def test_branch_and_job_are_exported_to_the_command(tmp_path: Path) -> None:
    script = (
        "import os; "
        "print('changed: ' + os.environ['WO_ORCHESTRATOR_BRANCH']); "
        "print('changed: ' + os.environ['WO_ORCHESTRATOR_JOB_ID'])"
    )
    applier = CliCodeApplier(
        command_template=f"{_PYTHON} -c {shlex.quote(script)} {{payload_file}} {{branch}}",
        workdir_root=tmp_path,
    )

    result = asyncio.run(applier.apply(_request()))

    assert result.changed_files == ("wo/j1-add-login", "J1")


def test_timeout_kills_the_command(tmp_path: Path) -> None:
    applier = CliCodeApplier(
        command_template=f"{_PYTHON} -c 'import time; time.sleep(5)' {{payload_file}}",
        workdir_root=tmp_path,
        timeout_seconds=1,
    )

    with pytest.raises(ApplyError, match="timed out after 1s"):
        asyncio.run(applier.apply(_request()))


def test_missing_executable_raises_apply_error(tmp_path: Path) -> None:
    applier = CliCodeApplier(
        command_template="definitely-not-a-real-editor {payload_file}",
        workdir_root=tmp_path,
    )

    with pytest.raises(ApplyError, match="not found"):
        asyncio.run(applier.apply(_request()))


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("editor --workdir {workdir}", "must include"),
        ("editor {payload_file} {model}", "Unsupported command template placeholder"),
    ],
)
def test_invalid_templates_are_rejected(tmp_path: Path, template: str, message: str) -> None:
    applier = CliCodeApplier(command_template=template, workdir_root=tmp_path)

    with pytest.raises(ApplyError, match=message):
        asyncio.run(applier.apply(_request()))


def test_echo_editor_refuses_unsafe_paths(tmp_path: Path, capsys) -> None:
    payload_file = tmp_path / "payload.json"
    payload_file.write_text(json.dumps({"files": {"../escape.py": "x"}}), "utf-8")

    exit_code = echo_editor_main(
        ["--payload-file", str(payload_file), "--workdir", str(tmp_path / "work")],
    )

    assert exit_code == 2
    assert "unsafe path" in capsys.readouterr().err
    assert not (tmp_path / "escape.py").exists()


def test_echo_editor_rejects_empty_payload(tmp_path: Path) -> None:
    payload_file = tmp_path / "payload.json"
    payload_file.write_text(json.dumps({"files": {}}), "utf-8")

    assert echo_editor_main(["--payload-file", str(payload_file), "--workdir", str(tmp_path)]) == 3
