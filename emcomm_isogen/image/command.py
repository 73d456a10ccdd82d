"""External command execution.

This module handles:
- Running child processes with output streamed line by line to the build log
- Forwarding SIGINT/SIGTERM to the running child and reporting cancellation
- Uniform error reporting for failed commands

Every external tool the pipeline uses (xorriso, unsquashfs, mount, chroot,
mksquashfs) goes through run_command so it can be observed and replaced.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from emcomm_isogen.errors import BuildCancelled, CommandError
from emcomm_isogen.logs import COMMAND_LOGGER

logger = logging.getLogger(__name__)
command_logger = logging.getLogger(COMMAND_LOGGER)

FORWARDED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class CommandResult:
    """Result of a finished command.

    Attributes:
        argv: Executed argument vector.
        returncode: Process exit code.
        output: Combined stdout/stderr, only when captured.
        duration: Wall-clock seconds.
    """

    argv: list[str]
    returncode: int
    output: str = ""
    duration: float = 0.0
    lines: list[str] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class _SignalForwarder:
    """Forward operator signals to a child process while it runs."""

    def __init__(self, process: subprocess.Popen[str]) -> None:
        self.process = process
        self.received: int | None = None
        self._previous: dict[int, object] = {}

    def _handle(self, signum: int, frame: object) -> None:
        self.received = signum
        logger.warning(
            "Received %s, forwarding to pid %d", signal.Signals(signum).name, self.process.pid
        )
        if self.process.poll() is None:
            self.process.send_signal(signum)

    def __enter__(self) -> _SignalForwarder:
        # signal.signal only works in the main thread
        if threading.current_thread() is threading.main_thread():
            for signum in FORWARDED_SIGNALS:
                self._previous[signum] = signal.signal(signum, self._handle)
        return self

    def __exit__(self, *exc: object) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)  # type: ignore[arg-type]


def format_argv(argv: Sequence[str]) -> str:
    return shlex.join([str(a) for a in argv])


def run_command(
    argv: Sequence[str | Path],
    *,
    log_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    check: bool = True,
    capture: bool = False,
    input_text: str | None = None,
) -> CommandResult:
    """Run an external command, streaming its output to the log.

    Args:
        argv: Command and arguments.
        log_path: Optional build log; output is appended with a command header.
        env: Extra environment variables, merged over os.environ.
        cwd: Working directory.
        check: Raise CommandError on a nonzero exit code.
        capture: Keep the combined output in the result.
        input_text: Text written to stdin; stdin is /dev/null otherwise.

    Returns:
        CommandResult with exit code and (optionally) output.

    Raises:
        CommandError: If the command cannot be started, or exits nonzero
            with check=True.
        BuildCancelled: If the operator interrupted the command.
    """
    args = [str(a) for a in argv]
    cmd_str = format_argv(args)
    command_logger.debug("$ %s", cmd_str)

    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    started_at = datetime.now(timezone.utc)
    lines: list[str] = []
    log_file = log_path.open("a", encoding="utf-8") if log_path else None
    try:
        if log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.flush()

        try:
            process = subprocess.Popen(
                args,
                cwd=cwd,
                env=full_env,
                stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as e:
            raise CommandError(
                f"Failed to execute {args[0]}: {e}",
                argv=args,
                code="execution_error",
            ) from e

        with _SignalForwarder(process) as forwarder:
            if input_text is not None and process.stdin is not None:
                process.stdin.write(input_text)
                process.stdin.close()
            for line in process.stdout or ():
                line = line.rstrip("\n")
                if capture:
                    lines.append(line)
                if log_file:
                    log_file.write(line + "\n")
                logger.debug("  %s", line)
            returncode = process.wait()

        duration = (datetime.now(timezone.utc) - started_at).total_seconds()
        if log_file:
            log_file.write(f"# Exit code: {returncode}\n")
            log_file.write(f"# Duration: {duration:.1f}s\n\n")
    finally:
        if log_file:
            log_file.close()

    if forwarder.received is not None:
        raise BuildCancelled(
            f"Interrupted by {signal.Signals(forwarder.received).name} while running {args[0]}"
        )

    result = CommandResult(
        argv=args,
        returncode=returncode,
        output="\n".join(lines),
        duration=duration,
        lines=lines,
    )
    if check and returncode != 0:
        raise CommandError(
            f"Command failed ({returncode}): {cmd_str}",
            returncode=returncode,
            argv=args,
        )
    return result


__all__ = ["CommandResult", "format_argv", "run_command"]
