import pytest

from masix.config.loader import ExecConfig
from masix.services.exec_service import ExecDenied, ExecResult, ExecService, truncate_output, validate_argument


@pytest.fixture()
def service():
    return ExecService(ExecConfig(enabled=True, max_output_chars=50))


def test_allowlisted_command_is_tokenised(service):
    assert service.parse("ls -la docs") == ["ls", "-la", "docs"]


@pytest.mark.parametrize(
    "command, reason",
    [
        ("rm -rf build", "not in the allowlist"),
        ("ls /etc", "absolute paths"),
        ("ls ../secrets", "path traversal"),
        ("ls 'a;b'", "metacharacters"),
        ("ls '$HOME'", "metacharacters"),
        ("ls 'unterminated", "invalid command syntax"),
        ("   ", "missing command"),
    ],
)
def test_unsafe_commands_are_refused(service, command, reason):
    with pytest.raises(ExecDenied, match=reason):
        service.parse(command)


def test_disabled_service_refuses_everything():
    with pytest.raises(ExecDenied, match="exec is disabled"):
        ExecService(ExecConfig()).parse("pwd")


def test_plain_relative_arguments_pass():
    validate_argument("src/app.py")
    validate_argument("--max-depth=1")


def test_truncate_output():
    assert truncate_output("short", 10) == "short"
    assert truncate_output("x" * 20, 10) == "x" * 10 + "\n...[truncated]"


@pytest.mark.asyncio
async def test_run_executes_inside_the_workdir(service, tmp_path):
    workdir = tmp_path / "profile"

    result = await service.run("pwd", workdir)

    assert result.exit_code == 0
    assert result.stdout.strip() == str(workdir)
    assert "Exit code: `0`" in result.format_for_chat()


def test_result_formatting():
    assert ExecResult("date", -1, "", "", timed_out=True).format_for_chat() == "Command timed out: `date`"
    assert ExecResult("true", 0, "", "").format_for_chat().endswith("No output.")
