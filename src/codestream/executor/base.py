"""
Base interfaces for language launchers.

All concrete launchers inherit from :class:`ProcessLauncher` and describe
how a source file is run: the file name the snippet is written to inside
the session workspace, and the interpreter command that executes it.  The
source is never interpolated into a command line; the interpreter always
receives the path of the written file as a separate argument.

Children are started in their own session (and therefore their own
process group) so that :class:`LaunchedProcess` can signal the program and
every subprocess it spawned in one go.  Wall-clock limits are *not*
enforced here; the session registry owns the timer and calls
:meth:`LaunchedProcess.stop` when it fires.
"""

from __future__ import annotations

import abc
import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import List, Optional

from ..errors import LaunchError
from ..workspace import WorkspaceManager, WorkspaceScope


logger = logging.getLogger("codestream.executor")

# same buffer limit asyncio.create_subprocess_exec uses
STREAM_LIMIT = 2 ** 16


class _ExitWatchingProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that reports the child's exit as soon as it happens.

    ``Process.wait()`` only returns once the pipes are closed as well, which
    never happens while a descendant still holds them.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future = loop.create_future()

    def process_exited(self) -> None:
        super().process_exited()
        if not self.exited.done():
            self.exited.set_result(None)


class LaunchedProcess:
    """A running child process and its two output pipes."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        transport: asyncio.SubprocessTransport,
        exited: asyncio.Future,
    ) -> None:
        self._process = process
        self._transport = transport
        self._exited = exited
        self.pid = process.pid
        # start_new_session makes the child a group leader
        self.pgid = process.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._process.stderr

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def has_exited(self) -> bool:
        return self._exited.done()

    async def wait(self) -> int:
        """Return the exit status of the child itself.

        Descendants that inherited stdout or stderr may keep the pipes open
        after this returns.
        """
        # shielded so a cancelled waiter leaves the shared future intact
        await asyncio.shield(self._exited)
        return self._process.returncode

    def signal_group(self, sig: int) -> bool:
        """Send ``sig`` to the whole process group.

        Returns ``False`` when the group no longer exists.
        """
        try:
            os.killpg(self.pgid, sig)
        except ProcessLookupError:
            return False
        except PermissionError:
            # the pgid may have been recycled by an unrelated process
            logger.warning("Not permitted to signal process group %s", self.pgid)
            return False
        return True

    async def stop(self, grace: float) -> None:
        """Terminate the group, escalating to ``SIGKILL`` after ``grace`` seconds."""
        if self.signal_group(signal.SIGTERM):
            logger.debug("Sent SIGTERM to process group %s", self.pgid)
        try:
            await asyncio.wait_for(self.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.info(
                "Process group %s ignored SIGTERM for %.1fs; sending SIGKILL",
                self.pgid,
                grace,
            )
            self.signal_group(signal.SIGKILL)
            await self.wait()

    def sweep(self) -> None:
        """Kill whatever is left of the process group."""
        if self.signal_group(signal.SIGKILL):
            logger.debug("Swept process group %s", self.pgid)

    def close(self) -> None:
        """Close our ends of the pipes, even if a descendant still holds them."""
        self._transport.close()


class ProcessLauncher(abc.ABC):
    """
    Abstract base class for language launchers.

    Subclasses set :attr:`language` and :attr:`filename` and implement
    :meth:`command`.
    """

    language: str = ""
    filename: str = ""

    def __init__(self, executable: str) -> None:
        """
        Parameters
        ----------
        executable: str
            Interpreter binary, resolved through ``PATH`` when it is not an
            absolute path.
        """
        self.executable = executable

    @abc.abstractmethod
    def command(self, script_path: Path) -> List[str]:
        """Return the argument vector that runs ``script_path``."""
        raise NotImplementedError

    def prepare_source(self, source: bytes) -> bytes:
        """Hook for launchers that need to adjust the source before writing it."""
        return source

    async def start(
        self,
        scope: WorkspaceScope,
        source: bytes,
        workspaces: WorkspaceManager,
    ) -> LaunchedProcess:
        """Write ``source`` into ``scope`` and start the interpreter on it.

        Parameters
        ----------
        scope: WorkspaceScope
            Workspace owned by the session.  It becomes the working
            directory of the child.
        source: bytes
            The user supplied program.
        workspaces: WorkspaceManager
            Manager used to write the file inside the scope.

        Returns
        -------
        LaunchedProcess
            Handle exposing stdout and stderr as independent byte streams.

        Raises
        ------
        LaunchError
            If the interpreter cannot be spawned.
        """
        script_path = workspaces.write(scope, self.filename, self.prepare_source(source))
        args = self.command(script_path)
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _ExitWatchingProtocol(limit=STREAM_LIMIT, loop=loop),
                *args,
                cwd=str(scope.path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise LaunchError(f"Interpreter not found for {self.language}: {args[0]}") from exc
        except OSError as exc:
            raise LaunchError(f"Could not start {args[0]}: {exc}") from exc
        process = asyncio.subprocess.Process(transport, protocol, loop)
        logger.info("Started %s process %s in %s", self.language, process.pid, scope.path)
        return LaunchedProcess(process, transport, protocol.exited)
