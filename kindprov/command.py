"""Running host commands and the abstract cluster node."""

from __future__ import annotations

import abc
import io
import subprocess
from typing import IO, Any, Iterable


class RunError(Exception):
    """A command failed to run or exited unsuccessfully."""

    def __init__(self, command: Iterable[str], output: bytes, inner: BaseException | None = None):
        self.command = list(command)
        self.output = output
        self.inner = inner
        # what the caller's stdout writer received before the failure
        self.stdout = b""
        super().__init__(f'command "{" ".join(self.command)}" failed with error: {inner}')


def _write(writer: IO[Any], data: bytes) -> None:
    if not data:
        return
    try:
        writer.write(data)
    except TypeError:
        writer.write(data.decode("utf-8", errors="replace"))


def _read_all(reader: Any) -> bytes:
    data = reader
    if hasattr(reader, "read"):
        data = reader.read()
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


class Command:
    """A command to run on the host, configured fluently."""

    def __init__(self, name: str, *args: str):
        self.name = name
        self.args = list(args)
        self.env: list[str] | None = None
        self.stdin: Any = None
        self.stdout: IO[Any] | None = None
        self.stderr: IO[Any] | None = None

    def set_env(self, *args: str) -> "Command":
        """Replace the environment with ``KEY=VALUE`` entries."""
        self.env = list(args)
        return self

    def set_stdin(self, reader: Any) -> "Command":
        self.stdin = reader
        return self

    def set_stdout(self, writer: IO[Any]) -> "Command":
        self.stdout = writer
        return self

    def set_stderr(self, writer: IO[Any]) -> "Command":
        self.stderr = writer
        return self

    def _environment(self) -> dict[str, str] | None:
        if self.env is None:
            return None
        environment = {}
        for entry in self.env:
            key, _, value = entry.partition("=")
            environment[key] = value
        return environment

    def run(self) -> None:
        """Run the command, raising RunError on failure."""
        argv = [self.name, *self.args]
        merged = self.stdout is self.stderr
        kwargs: dict[str, Any] = {
            "stdout": subprocess.PIPE,
            "stderr": subprocess.STDOUT if merged else subprocess.PIPE,
            "env": self._environment(),
            "check": False,
        }
        if self.stdin is not None:
            kwargs["input"] = _read_all(self.stdin)
        else:
            kwargs["stdin"] = subprocess.DEVNULL
        try:
            proc = subprocess.run(argv, **kwargs)
        except OSError as exc:
            raise RunError(argv, b"", exc) from exc
        out = proc.stdout or b""
        err = proc.stderr or b""
        if self.stdout is not None:
            _write(self.stdout, out)
        if not merged and self.stderr is not None:
            _write(self.stderr, err)
        if proc.returncode != 0:
            inner = subprocess.CalledProcessError(proc.returncode, argv)
            raise RunError(argv, out + err, inner)


class Node(abc.ABC):
    """A cluster node that commands can be run against."""

    @abc.abstractmethod
    def command(self, command: str, *args: str) -> Command:
        """Return a command that runs on the node."""

    @abc.abstractmethod
    def role(self) -> str:
        """Return the node's role."""

    @abc.abstractmethod
    def ip(self) -> tuple[str, str]:
        """Return the node's (IPv4, IPv6) addresses."""

    @abc.abstractmethod
    def serial_logs(self, writer: IO[Any]) -> None:
        """Write the node container's logs to writer."""

    @abc.abstractmethod
    def __str__(self) -> str:
        """Return the node name."""


def output(cmd: Command) -> bytes:
    """Run cmd and return what it wrote to stdout."""
    buffer = io.BytesIO()
    cmd.set_stdout(buffer)
    try:
        cmd.run()
    except RunError as exc:
        exc.stdout = buffer.getvalue()
        raise
    return buffer.getvalue()


def output_lines(cmd: Command) -> list[str]:
    """Run cmd and return its stdout split into lines."""
    text = output(cmd).decode("utf-8", errors="replace")
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def run_error_for_error(err: BaseException | None) -> RunError | None:
    """Return the RunError in err's cause chain, if there is one."""
    seen = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, RunError):
            return err
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None