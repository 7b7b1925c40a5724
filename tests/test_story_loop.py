import allure
from click.testing import CliRunner

from story_loop import __version__
from story_loop.main import story_loop

pytestmark = [
    allure.epic("Story Loop"),
    allure.feature("CLI"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(story_loop, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_help_lists_commands():
    runner = CliRunner()
    result = runner.invoke(story_loop, ["--help"])
    assert result.exit_code == 0
    for command in ("run", "status", "reset"):
        assert command in result.output
