"""Nodes backed by containers of a docker-compatible runtime."""

from __future__ import annotations

from typing import IO, Any

from kindprov.command import Command, Node, RunError, output_lines

_NODE_ROLE_LABEL_KEY = "io.x-k8s.kind.role"


class NodeCommand(Command):
    """A command run inside a node container via ``<runtime> exec``."""

    def __init__(self, runtime: str, container: str, command: str, *args: str):
        super().__init__(command, *args)
        self.runtime = runtime
        self.container = container

    def set_env(self, *args: str) -> "NodeCommand":
        self.env = list(args)
        return self

    def set_stdin(self, reader: Any) -> "NodeCommand":
        self.stdin = reader
        return self

    def set_stdout(self, writer: IO[Any]) -> "NodeCommand":
        self.stdout = writer
        return self

    def set_stderr(self, writer: IO[Any]) -> "NodeCommand":
        self.stderr = writer
        return self

    def build_args(self) -> list[str]:
        """Return the runtime arguments that execute this command."""
        args = ["exec", "--privileged"]
        if self.stdin is not None:
            args.append("-i")
        for entry in self.env or []:
            args += ["-e", entry]
        return [*args, self.container, self.name, *self.args]

    def run(self) -> None:
        cmd = Command(self.runtime, *self.build_args())
        if self.stdin is not None:
            cmd.set_stdin(self.stdin)
        if self.stderr is not None:
            cmd.set_stderr(self.stderr)
        if self.stdout is not None:
            cmd.set_stdout(self.stdout)
        cmd.run()


class ContainerNode(Node):
    """A node that is a container managed by runtime (docker or podman)."""

    def __init__(self, name: str, runtime: str = "docker"):
        self.name = name
        self.runtime = runtime

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"ContainerNode({self.name!r}, runtime={self.runtime!r})"

    def role(self) -> str:
        fmt = '{{ index .Config.Labels "' + _NODE_ROLE_LABEL_KEY + '"}}'
        try:
            lines = output_lines(Command(self.runtime, "inspect", "--format", fmt, self.name))
        except RunError as exc:
            raise RuntimeError("failed to get role for node") from exc
        if len(lines) != 1:
            raise RuntimeError(f"failed to get role for node: output lines {len(lines)} != 1")
        return lines[0]

    def ip(self) -> tuple[str, str]:
        fmt = "{{range .NetworkSettings.Networks}}{{.IPAddress}},{{.GlobalIPv6Address}}{{end}}"
        try:
            lines = output_lines(Command(self.runtime, "inspect", "-f", fmt, self.name))
        except RunError as exc:
            raise RuntimeError("failed to get container details") from exc
        if len(lines) != 1:
            raise RuntimeError(f"file should only be one line, got {len(lines)} lines")
        ips = lines[0].split(",")
        if len(ips) != 2:
            raise RuntimeError(
                f"container addresses should have 2 values, got {len(ips)} values"
            )
        return ips[0], ips[1]

    def command(self, command: str, *args: str) -> NodeCommand:
        return NodeCommand(self.runtime, self.name, command, *args)

    def serial_logs(self, writer: IO[Any]) -> None:
        Command(self.runtime, "logs", self.name).set_stdout(writer).set_stderr(writer).run()