import asyncio
import logging
import os
import shlex
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, AsyncIterator

import asyncssh

from fleetctl.core.config import get_settings
from fleetctl.core.errors import ExecutionError
from fleetctl.core.security import decrypt_secret
from fleetctl.models import Host, Credential

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class CommandOutput:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def output(self) -> str:
        if self.stderr and self.stdout:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


def build_shell_command(command: str, env: Optional[dict[str, str]] = None, cwd: Optional[str] = None) -> str:
    """Prefixes a command with its working directory and environment.

    Environment is exported inline rather than through the SSH session
    because most sshd configurations reject unknown variables (AcceptEnv).
    """
    parts = []
    if cwd:
        parts.append(f"cd {shlex.quote(cwd)} &&")
    for key, value in (env or {}).items():
        parts.append(f"export {key}={shlex.quote(str(value))};")
    parts.append(command)
    return " ".join(parts)


class CommandRunner:
    """Executes one command on one host.

    Implementations raise ExecutionError with kind ConnectionFailed, TimedOut
    or NonZeroExit; any other outcome is a CommandOutput with exit code 0.
    """
    async def execute(
        self,
        host: Host,
        credential: Optional[Credential],
        command: str,
        timeout: int,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> CommandOutput:
        raise NotImplementedError

    async def close(self) -> None:
        pass


def _raise_for_exit(host: Host, result: CommandOutput) -> CommandOutput:
    if result.exit_code != 0:
        raise ExecutionError(
            f"Command exited with status {result.exit_code} on {host.name}",
            ExecutionError.NON_ZERO_EXIT,
            exit_code=result.exit_code,
            output=result.output,
        )
    return result


class ConnectionPool:
    """SSH connections keyed by host id.

    A lease gives one task exclusive use of a host's connection for the
    duration of one command. Connections that saw an error or an interrupted
    command are closed instead of going back to the pool.
    """
    def __init__(
        self,
        connect_timeout: Optional[int] = None,
        known_hosts: Optional[str] = None,
        key_path: Optional[str] = None,
        keepalive_interval: Optional[int] = None,
    ):
        self.connect_timeout = connect_timeout or settings.SSH_CONNECT_TIMEOUT
        self.known_hosts = known_hosts if known_hosts is not None else settings.SSH_KNOWN_HOSTS
        self.key_path = key_path if key_path is not None else settings.SSH_KEY_PATH
        self.keepalive_interval = keepalive_interval if keepalive_interval is not None else settings.SSH_KEEPALIVE_INTERVAL
        self._connections: dict[int, asyncssh.SSHClientConnection] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    def _connect_kwargs(self, host: Host, credential: Optional[Credential]) -> dict:
        connect_kwargs = {
            "host": host.hostname,
            "port": host.port,
            "username": host.ssh_user,
            "known_hosts": self.known_hosts,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }
        if credential:
            if credential.username:
                connect_kwargs["username"] = credential.username
            secret = decrypt_secret(credential.secret)
            if credential.kind == "password":
                connect_kwargs["password"] = secret
                connect_kwargs["client_keys"] = None
            elif secret:
                connect_kwargs["client_keys"] = [asyncssh.import_private_key(secret)]
        elif self.key_path:
            connect_kwargs["client_keys"] = [self.key_path]
        return connect_kwargs

    async def _connect(self, host: Host, credential: Optional[Credential]) -> asyncssh.SSHClientConnection:
        try:
            conn = await asyncssh.connect(**self._connect_kwargs(host, credential))
        except (OSError, asyncssh.Error, asyncssh.KeyImportError, asyncio.TimeoutError) as e:
            raise ExecutionError(
                f"Could not connect to {host.display_address()}: {e}",
                ExecutionError.CONNECTION_FAILED,
            ) from e
        logger.debug(f"SSH connected to {host.display_address()}")
        return conn

    def _discard(self, host_id: int) -> None:
        conn = self._connections.pop(host_id, None)
        if conn is not None:
            conn.close()

    @asynccontextmanager
    async def lease(self, host: Host, credential: Optional[Credential]) -> AsyncIterator[asyncssh.SSHClientConnection]:
        lock = self._locks.setdefault(host.id, asyncio.Lock())
        async with lock:
            conn = self._connections.get(host.id)
            if conn is not None and conn.is_closed():
                logger.debug(f"SSH connection to {host.display_address()} went stale, reconnecting")
                self._connections.pop(host.id, None)
                conn = None
            if conn is None:
                conn = await self._connect(host, credential)
                self._connections[host.id] = conn
            try:
                yield conn
            except BaseException:
                self._discard(host.id)
                raise

    async def close_all(self) -> None:
        for host_id in list(self._connections):
            conn = self._connections.pop(host_id)
            conn.close()
            await conn.wait_closed()


class SSHCommandRunner(CommandRunner):
    def __init__(self, pool: Optional[ConnectionPool] = None):
        self.pool = pool or ConnectionPool()

    async def execute(self, host, credential, command, timeout, env=None, cwd=None) -> CommandOutput:
        full_command = build_shell_command(command, env, cwd)
        async with self.pool.lease(host, credential) as conn:
            try:
                completed = await asyncio.wait_for(conn.run(full_command, check=False), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise ExecutionError(
                    f"Command timed out after {timeout}s on {host.name}",
                    ExecutionError.TIMED_OUT,
                ) from e
            except (OSError, asyncssh.Error) as e:
                raise ExecutionError(
                    f"Connection to {host.name} lost: {e}",
                    ExecutionError.CONNECTION_FAILED,
                ) from e
        exit_code = completed.exit_status if completed.exit_status is not None else -1
        result = CommandOutput(exit_code=exit_code, stdout=str(completed.stdout or ""), stderr=str(completed.stderr or ""))
        return _raise_for_exit(host, result)

    async def close(self) -> None:
        await self.pool.close_all()


class LocalCommandRunner(CommandRunner):
    """Runs commands for hosts flagged ``is_local`` through a local shell."""
    async def execute(self, host, credential, command, timeout, env=None, cwd=None) -> CommandOutput:
        proc_env = os.environ.copy()
        proc_env.update(env or {})
        try:
            process = await asyncio.create_subprocess_exec(
                "sh", "-c", command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
                cwd=cwd,
            )
        except OSError as e:
            raise ExecutionError(f"Could not start local command: {e}", ExecutionError.CONNECTION_FAILED) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            raise ExecutionError(
                f"Command timed out after {timeout}s on {host.name}",
                ExecutionError.TIMED_OUT,
            ) from e
        except asyncio.CancelledError:
            process.kill()
            raise

        result = CommandOutput(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        return _raise_for_exit(host, result)


class HostCommandRunner(CommandRunner):
    """Default runner: SSH for remote hosts, a local shell for ``is_local`` hosts."""
    def __init__(self, ssh: Optional[SSHCommandRunner] = None, local: Optional[LocalCommandRunner] = None):
        self.ssh = ssh or SSHCommandRunner()
        self.local = local or LocalCommandRunner()

    async def execute(self, host, credential, command, timeout, env=None, cwd=None) -> CommandOutput:
        runner = self.local if host.is_local else self.ssh
        return await runner.execute(host, credential, command, timeout, env=env, cwd=cwd)

    async def close(self) -> None:
        await self.ssh.close()
