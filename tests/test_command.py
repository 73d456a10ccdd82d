"""Tests for image/command.py.

subprocess.Popen is mocked; no child process is started.
"""

import io
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from emcomm_isogen.errors import CommandError
from emcomm_isogen.image.command import format_argv, run_command


def _process(lines, returncode=0):
    process = MagicMock()
    process.stdout = io.StringIO("".join(f"{line}\n" for line in lines))
    process.stdin = MagicMock()
    process.wait.return_value = returncode
    process.poll.return_value = returncode
    process.pid = 4242
    return process


class TestRunCommand:
    """Tests for run_command."""

    def test_streams_output_to_log(self, tmp_path):
        log = tmp_path / "build.log"
        with patch("subprocess.Popen", return_value=_process(["one", "two"])):
            result = run_command(["unsquashfs", "-d", tmp_path / "root"], log_path=log)

        assert result.ok
        assert result.argv[2] == str(tmp_path / "root")
        content = log.read_text()
        assert "# Command: unsquashfs -d" in content
        assert "one\ntwo\n" in content
        assert "# Exit code: 0" in content

    def test_capture_keeps_lines(self):
        with patch("subprocess.Popen", return_value=_process(["a", "b"])):
            result = run_command(["echo"], capture=True)

        assert result.output == "a\nb"
        assert result.lines == ["a", "b"]

    def test_output_not_kept_without_capture(self):
        with patch("subprocess.Popen", return_value=_process(["secret"])):
            result = run_command(["echo"])

        assert result.output == ""

    def test_nonzero_exit_raises(self):
        with patch("subprocess.Popen", return_value=_process([], returncode=2)):
            with pytest.raises(CommandError) as exc_info:
                run_command(["mount", "--bind", "/dev", "/x"])

        assert exc_info.value.returncode == 2
        assert exc_info.value.argv == ["mount", "--bind", "/dev", "/x"]

    def test_nonzero_exit_without_check(self):
        with patch("subprocess.Popen", return_value=_process([], returncode=1)):
            result = run_command(["false"], check=False)

        assert result.returncode == 1
        assert not result.ok

    def test_missing_executable(self):
        with patch("subprocess.Popen", side_effect=FileNotFoundError("no such file")):
            with pytest.raises(CommandError) as exc_info:
                run_command(["xorriso"])

        assert exc_info.value.code == "execution_error"

    def test_input_text_goes_to_stdin(self):
        process = _process(["$6$hash"])
        with patch("subprocess.Popen", return_value=process) as popen:
            run_command(["openssl", "passwd", "-6", "-stdin"], input_text="pw\n")

        assert popen.call_args.kwargs["stdin"] == subprocess.PIPE
        process.stdin.write.assert_called_once_with("pw\n")
        process.stdin.close.assert_called_once()

    def test_env_is_merged(self):
        with patch("subprocess.Popen", return_value=_process([])) as popen:
            run_command(["true"], env={"DEBIAN_FRONTEND": "noninteractive"})

        env = popen.call_args.kwargs["env"]
        assert env["DEBIAN_FRONTEND"] == "noninteractive"
        assert "PATH" in env


def test_format_argv_quotes():
    assert format_argv(["echo", "two words"]) == "echo 'two words'"
