import allure
from click.testing import CliRunner

from wo_orchestrator import __version__
from wo_orchestrator.main import wo_orchestrator

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Work Orders, Runs, Escalations"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(wo_orchestrator, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
