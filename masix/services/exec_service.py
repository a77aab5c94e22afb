"""
Allowlisted command execution for admins (``/exec`` and the ``exec`` tool).

Commands are tokenised with ``shlex`` and run without a shell, inside the
profile workdir. Only binaries on the allowlist may run; arguments may not be
absolute paths, climb out with ``..`` or carry shell metacharacters.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

from masix.config.loader import ExecConfig

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = set("|;&><`$")


class ExecDenied(PermissionError):
    pass


@dataclass
class ExecResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    def format_for_chat(self) -> str:
        if self.timed_out:
            return f"Command timed out: `{self.command}`"
        lines = [f"Command: `{self.command}`\nExit code: `{self.exit_code}`"]
        if self.stdout.strip():
            lines.append(f"Stdout:\n```text\n{self.stdout}\n```")
        if self.stderr.strip():
            lines.append(f"Stderr:\n```text\n{self.stderr}\n```")
        if not self.stdout.strip() and not self.stderr.strip():
            lines.append("No output.")
        return "\n\n".join(lines)


def truncate_output(content: str, max_chars: int) -> str:
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + "\n...[truncated]"


def validate_argument(arg: str) -> None:
    if "\0" in arg:
        raise ExecDenied("argument contains a null byte")
    if arg.startswith("/"):
        raise ExecDenied("absolute paths are not allowed")
    if ".." in arg:
        raise ExecDenied("path traversal is not allowed")
    if _UNSAFE_CHARS & set(arg):
        raise ExecDenied("shell metacharacters are not allowed")


class ExecService:
    def __init__(self, config: ExecConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def parse(self, raw_command: str) -> list[str]:
        if not self.config.enabled:
            raise ExecDenied("exec is disabled")
        try:
            tokens = shlex.split(raw_command)
        except ValueError as exc:
            raise ExecDenied(f"invalid command syntax: {exc}") from exc
        if not tokens:
            raise ExecDenied("missing command")
        command, args = tokens[0], tokens[1:]
        if command not in self.config.allowlist:
            raise ExecDenied(f"command '{command}' is not in the allowlist")
        for arg in args:
            validate_argument(arg)
        return tokens

    async def run(self, raw_command: str, workdir: Path) -> ExecResult:
        tokens = self.parse(raw_command)
        display = shlex.join(tokens)
        workdir.mkdir(parents=True, exist_ok=True)
        try:
            proc = await asyncio.create_subprocess_exec(
                *tokens,
                cwd=str(workdir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ExecDenied(f"failed to execute '{tokens[0]}': {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.config.timeout_secs)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("exec timed out: %s", display)
            return ExecResult(command=display, exit_code=-1, stdout="", stderr="", timed_out=True)

        limit = self.config.max_output_chars
        result = ExecResult(
            command=display,
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=truncate_output(stdout.decode(errors="replace"), limit),
            stderr=truncate_output(stderr.decode(errors="replace"), limit),
        )
        logger.info("exec %s -> %d", display, result.exit_code)
        return result
