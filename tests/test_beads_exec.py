import allure
from click.testing import CliRunner

from beads_exec import __version__
from beads_exec.main import beads_exec

pytestmark = [
    allure.epic("Store Execution"),
    allure.feature("CLI Ops"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(beads_exec, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
