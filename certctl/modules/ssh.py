"""
Remote command execution over SSH.

Two runners share one interface:

* ``ParamikoSSHRunner`` dials nodes directly with paramiko.
* ``DockerSSHRunner`` runs the ``ssh`` client inside a local helper container,
  for setups where only that container can reach the nodes.

Every command runs on a worker thread while the caller waits on a
``RunContext``, so a cancelled or timed out run returns promptly even if the
remote side keeps going.
"""
import logging
import os
import socket
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, List, Optional, Sequence, Tuple, Union

import paramiko
import typer
from paramiko.ssh_exception import PasswordRequiredException, SSHException

from ..config import Config
from ..logging import setup_logger
from ..utils.context import ContextCancelled, RunContext
from .certificates.config import SSHConfig

logger = logging.getLogger("certctl.ssh")
# Remote report lines go straight to the terminal without the root handler.
remote_logger = setup_logger("certctl.remote", propagate=False)

CHECK_EXPIRATION_MARKER = "kubeadm certs check-expiration"
POLL_INTERVAL = 0.1
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)

Commands = Union[str, Sequence[str]]


class SSHError(RuntimeError):
    """Base class for remote execution failures."""

    def __init__(self, message: str, node: str = "", command: str = "",
                 stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.node = node
        self.command = command
        self.stdout = stdout
        self.stderr = stderr


class SSHConnectionError(SSHError):
    """The node could not be dialed or authenticated, or the key could not be loaded."""


class SSHSessionError(SSHError):
    """A session could not be opened on an established connection."""


class RemoteCommandError(SSHError):
    """The remote command exited non-zero."""

    def __init__(self, message: str, exit_status: int, **kwargs):
        super().__init__(message, **kwargs)
        self.exit_status = exit_status

    def __str__(self) -> str:
        text = super().__str__()
        output = (self.stderr or self.stdout or "").strip()
        return f"{text}: {output}" if output else text


class CommandCancelledError(SSHError, ContextCancelled):
    """The caller's context ended before the command finished."""


def join_commands(commands: Commands) -> str:
    """Join a command sequence with ``&&`` so the first failure stops the rest."""
    if isinstance(commands, str):
        return commands
    return " && ".join(commands)


def prompt_passphrase(key_path: str) -> str:
    return typer.prompt(f"Enter passphrase for SSH key {key_path}", hide_input=True)


def load_private_key(key_path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Load a private key, trying each supported key type.

    Raises:
        PasswordRequiredException: If the key is encrypted and no passphrase was given
        SSHConnectionError: If the file cannot be read or parsed
    """
    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key_file(key_path, password=passphrase)
        except PasswordRequiredException:
            raise
        except (SSHException, ValueError) as e:
            last_error = e
        except OSError as e:
            raise SSHConnectionError(f"reading private key {key_path}: {e}") from e
    raise SSHConnectionError(f"parsing private key {key_path}: {last_error}")


class SSHRunner(ABC):
    """Runs shell commands on nodes."""

    def __init__(
        self,
        verbosity: int = 0,
        port: int = None,
        connect_timeout: int = None,
        prompt: Callable[[str], str] = None,
    ):
        """
        Args:
            verbosity: 0 captures output, 1 also logs certificate expiration
                reports, 2 or more streams command output to the terminal
            port: SSH port
            connect_timeout: Seconds allowed for dialing a node
            prompt: Asks the user for a key passphrase
        """
        self.verbosity = verbosity
        self.port = port or Config.SSH_PORT
        self.connect_timeout = connect_timeout or Config.SSH_CONNECT_TIMEOUT
        self._prompt = prompt or prompt_passphrase
        self._ssh_config: Optional[SSHConfig] = None
        self._lock = threading.Lock()

    @property
    def ssh_config(self) -> Optional[SSHConfig]:
        return self._ssh_config

    def init_ssh_config(self, ssh_config: SSHConfig) -> None:
        """Use these credentials for subsequent commands."""
        self._ssh_config = ssh_config.model_copy()

    def run_command(self, ctx: RunContext, node: str, commands: Commands) -> None:
        self._run(ctx, node, commands)

    def run_command_with_output(self, ctx: RunContext, node: str, commands: Commands) -> str:
        return self._run(ctx, node, commands).strip()

    def _run(self, ctx: RunContext, node: str, commands: Commands) -> str:
        if self._ssh_config is None:
            raise SSHError("ssh config not initialized", node=node)

        command = join_commands(commands)
        if ctx.cancelled:
            raise CommandCancelledError(f"cancelling command on node {node}: {ctx.error}",
                                        node=node, command=command)

        stream = self.verbosity >= 2
        logger.debug(f"Running on {node}: {command}")
        cancelled = threading.Event()
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self._execute, node, command, stream, cancelled)
        try:
            while True:
                try:
                    exit_status, stdout, stderr = future.result(timeout=POLL_INTERVAL)
                    break
                except FutureTimeout:
                    if ctx.cancelled:
                        cancelled.set()
                        self._cancel()
                        raise CommandCancelledError(
                            f"cancelling command on node {node}: {ctx.error}",
                            node=node, command=command)
        finally:
            executor.shutdown(wait=False)

        if exit_status != 0:
            raise RemoteCommandError(
                f"executing command on node {node}: exit status {exit_status}",
                exit_status,
                node=node, command=command, stdout=stdout, stderr=stderr,
            )

        if self.verbosity >= 1 and not stream and CHECK_EXPIRATION_MARKER in command:
            for line in stdout.splitlines():
                remote_logger.info(f"[{node}] {line}")
        return stdout

    @abstractmethod
    def _execute(self, node: str, command: str, stream: bool,
                 cancelled: threading.Event) -> Tuple[int, str, str]:
        """Run one command and return (exit status, stdout, stderr).

        Implementations must not start the command once ``cancelled`` is set.
        """

    @abstractmethod
    def _cancel(self) -> None:
        """Abandon the command currently running, if any."""


def abandoned(node: str, command: str) -> CommandCancelledError:
    return CommandCancelledError(f"command on node {node} abandoned before it started",
                                 node=node, command=command)


class ParamikoSSHRunner(SSHRunner):
    """Dials each node directly with paramiko."""

    def __init__(self, verbosity: int = 0, port: int = None, connect_timeout: int = None,
                 prompt: Callable[[str], str] = None,
                 client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient):
        super().__init__(verbosity, port, connect_timeout, prompt)
        self._client_factory = client_factory
        self._pkey: Optional[paramiko.PKey] = None
        self._active: Optional[paramiko.SSHClient] = None

    def init_ssh_config(self, ssh_config: SSHConfig) -> None:
        super().init_ssh_config(ssh_config)
        key_path = os.path.expanduser(ssh_config.key_path)
        try:
            self._pkey = load_private_key(key_path, ssh_config.passphrase or None)
        except PasswordRequiredException:
            passphrase = self._prompt(key_path)
            self._ssh_config.passphrase = passphrase
            try:
                self._pkey = load_private_key(key_path, passphrase)
            except PasswordRequiredException as e:
                raise SSHConnectionError(f"private key {key_path} requires a passphrase") from e

    def _execute(self, node: str, command: str, stream: bool,
                 cancelled: threading.Event) -> Tuple[int, str, str]:
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=node,
                port=self.port,
                username=self._ssh_config.user,
                pkey=self._pkey,
                timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (SSHException, socket.error) as e:
            client.close()
            raise SSHConnectionError(f"failed to connect to node {node}: {e}",
                                     node=node, command=command) from e

        # Same lock as _cancel: it either sees this client or the command never starts.
        with self._lock:
            if cancelled.is_set():
                client.close()
                raise abandoned(node, command)
            self._active = client
        try:
            try:
                _, stdout, stderr = client.exec_command(command)
            except SSHException as e:
                raise SSHSessionError(f"creating session on node {node}: {e}",
                                      node=node, command=command) from e

            channel = stdout.channel
            if stream:
                channel.set_combine_stderr(True)
                lines: List[str] = []
                for line in iter(stdout.readline, ""):
                    sys.stdout.write(line)
                    sys.stdout.flush()
                    lines.append(line)
                return channel.recv_exit_status(), "".join(lines), ""

            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            return channel.recv_exit_status(), out, err
        finally:
            with self._lock:
                self._active = None
            client.close()

    def _cancel(self) -> None:
        with self._lock:
            client = self._active
        if client is not None:
            client.close()


class DockerSSHRunner(SSHRunner):
    """Runs ``ssh`` inside a local container via ``docker exec``.

    When a key needs a passphrase an ``ssh-agent`` is started once in the
    container and each key is added to it once, so later commands do not prompt.
    """

    AGENT_SOCKET = "/tmp/certctl-ssh-agent.sock"
    AGENT_SENTINEL = "/tmp/agent_ready"
    ASKPASS_SCRIPT = "/tmp/certctl-askpass"
    PASSPHRASE_ENV = "CERTCTL_AGENT_PASSPHRASE"

    def __init__(self, container_name: str, verbosity: int = 0, port: int = None,
                 connect_timeout: int = None, prompt: Callable[[str], str] = None,
                 popen: Callable[..., subprocess.Popen] = subprocess.Popen,
                 run: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        super().__init__(verbosity, port, connect_timeout, prompt)
        self.container_name = container_name
        self._popen = popen
        self._run_process = run
        self._use_agent = False
        self._active: Optional[subprocess.Popen] = None

    def init_ssh_config(self, ssh_config: SSHConfig) -> None:
        super().init_ssh_config(ssh_config)
        key_path = os.path.expanduser(ssh_config.key_path)
        passphrase = ssh_config.passphrase
        if not passphrase and self._key_needs_passphrase(key_path):
            passphrase = self._prompt(key_path)
            self._ssh_config.passphrase = passphrase
        self._use_agent = bool(passphrase)
        if self._use_agent:
            self._ensure_agent(key_path, passphrase)

    @staticmethod
    def _key_needs_passphrase(key_path: str) -> bool:
        # The key may only exist inside the container; nothing to check then.
        if not os.path.exists(key_path):
            return False
        try:
            load_private_key(key_path)
        except PasswordRequiredException:
            return True
        except SSHConnectionError:
            return False
        return False

    def _exec_prefix(self, *env: str) -> List[str]:
        cmd = ["docker", "exec", "-i"]
        for item in env:
            cmd.extend(["-e", item])
        cmd.append(self.container_name)
        return cmd

    def _agent_keys(self) -> Optional[str]:
        """Keys listed by the container's agent, or None when no agent answers."""
        check = self._exec_prefix(f"SSH_AUTH_SOCK={self.AGENT_SOCKET}") + ["ssh-add", "-l"]
        result = self._run_process(check, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        # 1 means the agent is up but holds no keys
        if result.returncode not in (0, 1):
            return None
        return result.stdout or ""

    def _key_fingerprint(self, key_path: str) -> str:
        cmd = self._exec_prefix() + ["ssh-keygen", "-l", "-f", key_path]
        result = self._run_process(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        fields = result.stdout.split() if result.returncode == 0 else []
        return fields[1] if len(fields) > 1 else ""

    def _ensure_agent(self, key_path: str, passphrase: str) -> None:
        listed = self._agent_keys()
        if listed is not None:
            fingerprint = self._key_fingerprint(key_path)
            if fingerprint and fingerprint in listed:
                logger.debug(f"Key {key_path} already loaded in ssh-agent in container {self.container_name}")
                return

        add_key = (
            f"printf '#!/bin/sh\\necho \"${self.PASSPHRASE_ENV}\"\\n' > {self.ASKPASS_SCRIPT}"
            f" && chmod 700 {self.ASKPASS_SCRIPT}"
            f" && SSH_ASKPASS={self.ASKPASS_SCRIPT} SSH_ASKPASS_REQUIRE=force DISPLAY=none"
            f" ssh-add {key_path} < /dev/null"
        )
        if listed is None:
            add_key = (
                f"rm -f {self.AGENT_SOCKET} {self.AGENT_SENTINEL}"
                f" && eval $(ssh-agent -a {self.AGENT_SOCKET}) > /dev/null"
                f" && {add_key}"
            )
        script = (
            f"{add_key}; rc=$?; rm -f {self.ASKPASS_SCRIPT}"
            f"; [ $rc -eq 0 ] && touch {self.AGENT_SENTINEL}"
        )
        env_names = (self.PASSPHRASE_ENV, f"SSH_AUTH_SOCK={self.AGENT_SOCKET}")
        cmd = self._exec_prefix(*env_names) + ["sh", "-c", script]
        env = dict(os.environ, **{self.PASSPHRASE_ENV: passphrase})
        result = self._run_process(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                   text=True, env=env)
        if result.returncode != 0:
            raise SSHConnectionError(
                f"adding {key_path} to ssh-agent in container {self.container_name}: "
                f"{(result.stderr or result.stdout).strip()}"
            )
        logger.debug(f"Added {key_path} to ssh-agent in container {self.container_name}")

    def build_command(self, node: str, command: str) -> List[str]:
        """Full ``docker exec ... ssh ...`` argument list for one remote command."""
        env = [f"SSH_AUTH_SOCK={self.AGENT_SOCKET}"] if self._use_agent else []
        cmd = self._exec_prefix(*env) + ["ssh"]
        if not self._use_agent and self._ssh_config.key_path:
            cmd.extend(["-i", self._ssh_config.key_path])
        cmd.extend([
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-p", str(self.port),
            f"{self._ssh_config.user}@{node}",
            command,
        ])
        return cmd

    def _execute(self, node: str, command: str, stream: bool,
                 cancelled: threading.Event) -> Tuple[int, str, str]:
        argv = self.build_command(node, command)
        with self._lock:
            if cancelled.is_set():
                raise abandoned(node, command)
            try:
                proc = self._popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT if stream else subprocess.PIPE,
                    text=True,
                )
            except OSError as e:
                raise SSHSessionError(f"creating session on node {node}: {e}",
                                      node=node, command=command) from e
            self._active = proc

        try:
            if stream:
                lines: List[str] = []
                for line in proc.stdout:
                    sys.stdout.write(line)
                    sys.stdout.flush()
                    lines.append(line)
                proc.wait()
                out, err = "".join(lines), ""
            else:
                out, err = proc.communicate()
        finally:
            with self._lock:
                self._active = None

        # ssh reserves 255 for its own failures
        if proc.returncode == 255:
            raise SSHConnectionError(f"failed to connect to node {node}: {(err or out).strip()}",
                                     node=node, command=command, stdout=out, stderr=err)
        return proc.returncode, out, err

    def _cancel(self) -> None:
        with self._lock:
            proc = self._active
        if proc is not None and proc.poll() is None:
            proc.kill()


def build_ssh_runner(verbosity: int = 0, ssh_container: str = "", **kwargs) -> SSHRunner:
    """Docker-proxied runner when a container is named, direct otherwise."""
    if ssh_container:
        logger.info(f"Using SSH through container {ssh_container}")
        return DockerSSHRunner(ssh_container, verbosity=verbosity, **kwargs)
    return ParamikoSSHRunner(verbosity=verbosity, **kwargs)
