"""Run external commands, capture their output and enforce timeouts."""

from __future__ import annotations

import os
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Iterable, Sequence
from typing import IO

from carina import log


class CommandError(Exception):
    """A command could not be started, failed or timed out.

    ``output`` holds whatever the command printed before the failure and
    ``returncode`` its exit status, or None when it never finished.
    """

    def __init__(self, message: str, output: str = "", returncode: int | None = None) -> None:
        super().__init__(message)
        self.output = output
        self.returncode = returncode


def _decode(data: bytes | None) -> str:
    return data.decode(errors="replace") if data else ""


def _exit_message(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"signal: {name}"
    return f"exit status {returncode}"


def _not_started(command: str, exc: OSError) -> CommandError:
    message = f"exec: {command!r}: {exc.strerror or exc}"
    return CommandError(message, output=message)


def _log_command(command: str, args: Sequence[str]) -> None:
    log.debug("Running command: %s %s", command, " ".join(args))


def _log_lines(stream: IO[bytes]) -> None:
    for line in stream:
        log.debug("%s", _decode(line).rstrip("\n"))


def _env_from_list(env: Iterable[str]) -> dict[str, str] | None:
    entries = list(env)
    if not entries:
        return None
    result: dict[str, str] = {}
    for entry in entries:
        key, _, value = entry.partition("=")
        result[key] = value
    return result


class CommandExecutor:
    """Starts processes and collects their output."""

    def execute_command(self, command: str, *args: str) -> None:
        """Run a command, logging its output, and wait for it to finish."""
        self.execute_command_with_env([], command, *args)

    def execute_command_with_env(self, env: Iterable[str], command: str, *args: str) -> None:
        """Run a command with the given "KEY=VALUE" environment and wait for it.

        An empty ``env`` keeps the current environment.
        """
        _log_command(command, args)
        try:
            proc = subprocess.Popen(
                [command, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=_env_from_list(env),
            )
        except OSError as exc:
            raise _not_started(command, exc) from exc

        assert proc.stdout is not None and proc.stderr is not None
        stderr_reader = threading.Thread(target=_log_lines, args=(proc.stderr,), daemon=True)
        stderr_reader.start()
        _log_lines(proc.stdout)
        stderr_reader.join()
        returncode = proc.wait()
        proc.stdout.close()
        proc.stderr.close()
        if returncode != 0:
            raise CommandError(_exit_message(returncode), returncode=returncode)

    def execute_command_with_timeout(self, timeout: float, command: str, *args: str) -> str:
        """Run a command and return its trimmed combined output.

        After ``timeout`` seconds the process is interrupted; after another
        ``timeout`` seconds it is killed.
        """
        _log_command(command, args)
        try:
            proc = subprocess.Popen([command, *args], stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        except OSError as exc:
            raise _not_started(command, exc) from exc

        interrupt_sent = False
        while True:
            try:
                out, _ = proc.communicate(timeout=timeout)
                break
            except subprocess.TimeoutExpired:
                if interrupt_sent:
                    log.info(
                        "timeout waiting for process %s to return after interrupt signal was sent. "
                        "Sending kill signal to the process",
                        command,
                    )
                    try:
                        proc.kill()
                    except OSError as exc:
                        log.error("Failed to kill process %s: %s", command, exc)
                        raise CommandError(
                            f"timeout waiting for the command {command} to return after interrupt "
                            f"signal was sent. Tried to kill the process but that failed: {exc}"
                        ) from exc
                    out, _ = proc.communicate()
                    raise CommandError(
                        f"timeout waiting for the command {command} to return",
                        output=_decode(out).strip(),
                    ) from None
                log.info(
                    "timeout waiting for process %s to return. Sending interrupt signal to the process",
                    command,
                )
                try:
                    proc.send_signal(signal.SIGINT)
                except OSError as exc:
                    log.error("Failed to send interrupt signal to process %s: %s", command, exc)
                interrupt_sent = True

        output = _decode(out).strip()
        if proc.returncode != 0:
            raise CommandError(_exit_message(proc.returncode), output=output, returncode=proc.returncode)
        if interrupt_sent:
            raise CommandError(
                f"timeout waiting for the command {command} to return",
                output=output,
                returncode=proc.returncode,
            )
        return output

    def execute_command_with_output(self, command: str, *args: str) -> str:
        """Run a command and return its trimmed standard output."""
        _log_command(command, args)
        try:
            result = subprocess.run(
                [command, *args], stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False
            )
        except OSError as exc:
            raise _not_started(command, exc) from exc
        if result.returncode != 0:
            output = f"{_decode(result.stdout)}. {_decode(result.stderr)}".strip()
            raise CommandError(_exit_message(result.returncode), output=output, returncode=result.returncode)
        return _decode(result.stdout).strip()

    def execute_command_with_combined_output(self, command: str, *args: str) -> str:
        """Run a command and return its trimmed standard output and error together."""
        _log_command(command, args)
        try:
            result = subprocess.run(
                [command, *args], stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
            )
        except OSError as exc:
            raise _not_started(command, exc) from exc
        output = _decode(result.stdout).strip()
        if result.returncode != 0:
            raise CommandError(_exit_message(result.returncode), output=output, returncode=result.returncode)
        return output

    def _run_with_output_file(
        self, timeout: float | None, command: str, outfile_arg: str, args: Sequence[str]
    ) -> str:
        fd, out_path = tempfile.mkstemp()
        os.close(fd)
        try:
            argv = [*args, outfile_arg, out_path]
            _log_command(command, argv)
            try:
                result = subprocess.run(
                    [command, *argv],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    timeout=timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                output = _decode(exc.output)
                if output:
                    log.debug("%s", output)
                raise CommandError("context deadline exceeded", output=output) from exc
            except OSError as exc:
                raise _not_started(command, exc) from exc

            output = _decode(result.stdout)
            if result.returncode != 0 and timeout is None:
                output = f"{output}. "
            if output:
                log.debug("%s", output)
            if result.returncode != 0:
                raise CommandError(_exit_message(result.returncode), output=output, returncode=result.returncode)
            with open(out_path, encoding="utf-8", errors="replace") as handle:
                return handle.read()
        finally:
            try:
                os.remove(out_path)
            except FileNotFoundError:
                pass

    def execute_command_with_output_file(self, command: str, outfile_arg: str, *args: str) -> str:
        """Run a command that writes its result to a file and return that file's content.

        ``outfile_arg`` followed by a temporary file name is appended to the arguments.
        """
        return self._run_with_output_file(None, command, outfile_arg, args)

    def execute_command_with_output_file_timeout(
        self, timeout: float, command: str, outfile_arg: str, *args: str
    ) -> str:
        """Like execute_command_with_output_file, killing the command after ``timeout`` seconds."""
        return self._run_with_output_file(timeout, command, outfile_arg, args)

    def execute_command_resident_binary(
        self, timeout: float, command: str, *args: str
    ) -> subprocess.Popen | None:
        """Start a long-running command in the background, then wait ``timeout`` seconds.

        Returns the started process, or None if it could not be started.
        """
        proc: subprocess.Popen | None
        try:
            proc = subprocess.Popen(
                [command, *args], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as exc:
            log.error("run Resident server failed: %s", exc)
            proc = None
        else:
            threading.Thread(target=self._watch_resident, args=(proc,), daemon=True).start()
        time.sleep(timeout)
        return proc

    @staticmethod
    def _watch_resident(proc: subprocess.Popen) -> None:
        returncode = proc.wait()
        if returncode != 0:
            log.error("run Resident server failed: %s", _exit_message(returncode))