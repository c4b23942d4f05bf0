"""Run external commands locally or on a remote host over SSH."""

import logging
import os
import shlex
import subprocess
import sys
import threading
from typing import IO, Any, Dict, List, Optional, Sequence

import paramiko
from pydantic import AliasChoices, BaseModel, Field

from provisioner.errors import CommandFailed

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 60


class SshInfo(BaseModel):
    """Connection details for a remote build host."""

    host: str
    username: str
    private_key: Optional[str] = Field(default=None, validation_alias=AliasChoices("private_key", "privateKey"))
    port: int = 22


def _pump(pipe: IO[str], sink: Optional[IO[str]], lines: List[str]) -> None:
    for line in iter(pipe.readline, ""):
        lines.append(line)
        if sink is not None:
            sink.write(line)
            sink.flush()
    pipe.close()


def _read_all(channel_file: Any, chunks: List[str]) -> None:
    chunks.append(channel_file.read().decode())


class Executor:
    """Runs commands on this machine, or on ``ssh`` when it is given.

    Remote connections are opened on first use and kept until ``close``.
    """

    def __init__(self, ssh: Optional[SshInfo] = None) -> None:
        self.ssh = ssh
        self._client: Optional[paramiko.SSHClient] = None

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        stream: bool = False,
        cwd: Optional[str] = None,
    ) -> str:
        """Run ``command`` with ``args`` and return its stripped stdout.

        Args:
            command: Executable to run
            args: Arguments, passed without shell interpretation
            env: Extra environment variables. Locally they are merged over
                the current environment; remotely only these are set.
            stream: Echo output to this process's stdout/stderr as it arrives
            cwd: Working directory for the command

        Raises:
            CommandFailed: If the command exits non-zero or cannot be started
        """
        argv = [command, *args]
        logger.debug("Running %s%s", shlex.join(argv), f" on {self.ssh.host}" if self.ssh else "")
        if self.ssh is not None:
            return self._run_ssh(self.ssh, argv, env or {}, stream, cwd)
        return self._run_local(argv, env or {}, stream, cwd)

    def _run_local(self, argv: List[str], env: Dict[str, str], stream: bool, cwd: Optional[str]) -> str:
        full_env = {**os.environ, **env}
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=full_env,
                cwd=cwd,
            )
        except OSError as e:
            raise CommandFailed(shlex.join(argv), 127, str(e)) from e

        out: List[str] = []
        err: List[str] = []
        readers = [
            threading.Thread(target=_pump, args=(proc.stdout, sys.stdout if stream else None, out)),
            threading.Thread(target=_pump, args=(proc.stderr, sys.stderr if stream else None, err)),
        ]
        for reader in readers:
            reader.start()
        returncode = proc.wait()
        for reader in readers:
            reader.join()

        if returncode != 0:
            raise CommandFailed(shlex.join(argv), returncode, "".join(err).strip())
        return "".join(out).strip()

    def _connect(self, ssh: SshInfo) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_args: Dict[str, Any] = {
            "hostname": ssh.host,
            "port": ssh.port,
            "username": ssh.username,
            "timeout": 10,
        }
        if ssh.private_key:
            connect_args["key_filename"] = os.path.expanduser(ssh.private_key)
        client.connect(**connect_args)
        transport = client.get_transport()
        if transport is not None:
            transport.set_keepalive(KEEPALIVE_INTERVAL)
        self._client = client
        return client

    def _run_ssh(self, ssh: SshInfo, argv: List[str], env: Dict[str, str], stream: bool, cwd: Optional[str]) -> str:
        # sshd drops most variables sent over the channel, so set them in the command line
        parts = [f"{key}={shlex.quote(value)}" for key, value in env.items()]
        parts.append(shlex.join(argv))
        command_line = " ".join(parts)
        if cwd:
            command_line = f"cd {shlex.quote(cwd)} && {command_line}"

        try:
            client = self._connect(ssh)
            _, stdout, stderr = client.exec_command(command_line)
        except (paramiko.SSHException, OSError) as e:
            raise CommandFailed(shlex.join(argv), 255, f"SSH to {ssh.host} failed: {e}") from e

        # stderr is drained on its own thread while stdout is read
        err: List[str] = []
        err_reader = threading.Thread(target=_read_all, args=(stderr, err))
        err_reader.start()
        if stream:
            out = []
            for line in iter(stdout.readline, ""):
                out.append(line)
                sys.stdout.write(line)
                sys.stdout.flush()
            output = "".join(out)
        else:
            output = stdout.read().decode()
        exit_code = stdout.channel.recv_exit_status()
        err_reader.join()
        error = "".join(err)
        if stream and error:
            sys.stderr.write(error)

        if exit_code != 0:
            raise CommandFailed(shlex.join(argv), exit_code, error.strip())
        return output.strip()

    def close(self) -> None:
        """Close the SSH connection if one is open."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "Executor":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
