"""
Session registry: the owner of every in-flight execution.

The registry validates requests, creates sessions and runs each one in its
own asyncio task.  That task is the only writer of the session's state; the
public methods (:meth:`SessionRegistry.submit`, :meth:`SessionRegistry.cancel`,
:meth:`SessionRegistry.status`) never wait for an execution and can be
called concurrently.

Every execution follows the same path::

    Queued -> acquire workspace -> launch -> Running
           -> exit | timeout | cancel
           -> stop/sweep process group -> drain output
           -> release workspace -> terminal state -> execution_complete

The wall-clock timeout is enforced here, not by the launcher, so a silent
or hung program is always bounded.  A failure while handling one session
is logged and turns that session into ``Failed``; it never reaches the
registry map or other sessions.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional, Union

from .errors import (
    CodeTooLargeError,
    LaunchError,
    SessionNotFoundError,
    UnsupportedLanguageError,
    ValidationError,
)
from .events import ExecutionCompleteEvent, ExecutionStartEvent
from .executor import LaunchedProcess, ProcessLauncher
from .multiplexer import OutputMultiplexer, SessionOutbox
from .notifier import Notifier
from .session import ExecutionRequest, Session, SessionSnapshot, SessionState
from .workspace import WorkspaceManager, WorkspaceScope


logger = logging.getLogger("codestream.registry")


class SessionRegistry:
    """Create, run, cancel and report on execution sessions."""

    def __init__(
        self,
        launchers: Dict[str, ProcessLauncher],
        workspaces: WorkspaceManager,
        notifier: Notifier,
        timeout: float = 10.0,
        kill_grace: float = 2.0,
        max_source_bytes: int = 65536,
        outbox_size: int = 1024,
        chunk_size: int = 4096,
        retention: float = 60.0,
    ) -> None:
        """
        Parameters
        ----------
        launchers: dict
            Language allow-list mapping a language name to its launcher.
        workspaces: WorkspaceManager
            Provides the per-session scratch directories.
        notifier: Notifier
            Receives every event the sessions emit.
        timeout: float
            Wall-clock limit of one execution in seconds.
        kill_grace: float
            Seconds between ``SIGTERM`` and ``SIGKILL`` of a process group,
            also the bound on draining output after the process is gone.
        max_source_bytes: int
            Largest accepted source.
        outbox_size: int
            Capacity of each session's event buffer.
        chunk_size: int
            Maximum bytes per ``output`` event.
        retention: float
            Seconds a finished session remains queryable.
        """
        self.launchers = {name.lower(): launcher for name, launcher in launchers.items()}
        self.workspaces = workspaces
        self.notifier = notifier
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.max_source_bytes = max_source_bytes
        self.outbox_size = outbox_size
        self.chunk_size = chunk_size
        self.retention = retention
        self._sessions: Dict[str, Session] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._processes: Dict[str, LaunchedProcess] = {}
        self._lock = threading.Lock()
        self._closed = False

    # -- public API -----------------------------------------------------

    def submit(
        self,
        language: str,
        source: Union[str, bytes],
        project_ref: Any = None,
    ) -> str:
        """Validate a request, create a ``Queued`` session and start it.

        Must be called from within the running event loop.  Returns the new
        session id without waiting for the execution.
        """
        if self._closed:
            raise ValidationError("Registry is shutting down")
        language = (language or "").strip().lower()
        launcher = self.launchers.get(language)
        if launcher is None:
            raise UnsupportedLanguageError(language)
        if isinstance(source, str):
            source = source.encode("utf-8")
        if not source:
            raise ValidationError("Source is empty")
        if len(source) > self.max_source_bytes:
            raise CodeTooLargeError(len(source), self.max_source_bytes)

        session = Session(ExecutionRequest(language=language, source=source, project_ref=project_ref))
        with self._lock:
            self._sessions[session.id] = session
            self._done[session.id] = asyncio.Event()
            self._tasks[session.id] = asyncio.create_task(
                self._run(session, launcher), name=f"session-{session.id}"
            )
        logger.info("Accepted %s session %s (%d bytes)", language, session.id, len(source))
        return session.id

    def cancel(self, session_id: str) -> bool:
        """Request termination of a session.

        Returns ``False`` when the session is already terminal, its process
        has already exited (the session only waits for output to drain) or a
        cancel is already pending; no events are emitted in that case.
        """
        session = self._get(session_id)
        if session.state.is_terminal or session.cancel_requested.is_set():
            return False
        with self._lock:
            process = self._processes.get(session_id)
        if process is not None and process.has_exited:
            return False
        session.cancel_requested.set()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    def status(self, session_id: str) -> SessionSnapshot:
        return self._get(session_id).snapshot()

    def sessions(self) -> List[SessionSnapshot]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [session.snapshot() for session in sessions]

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> SessionSnapshot:
        """Wait until the session reaches a terminal state."""
        session = self._get(session_id)
        with self._lock:
            done = self._done.get(session_id)
        if done is not None:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        return session.snapshot()

    async def shutdown(self) -> None:
        """Refuse new work, cancel every live session and wait for cleanup."""
        self._closed = True
        with self._lock:
            sessions = list(self._sessions.values())
            tasks = list(self._tasks.values())
        for session in sessions:
            if not session.state.is_terminal:
                session.cancel_requested.set()
        if tasks:
            logger.info("Waiting for %d sessions to finish", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- internals ------------------------------------------------------

    def _get(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _run(self, session: Session, launcher: ProcessLauncher) -> None:
        outbox = SessionOutbox(session.id, self.notifier, self.outbox_size)
        outbox.start()
        # what is recorded if the task itself gets cancelled
        outcome: Dict[str, Any] = {"state": SessionState.CANCELLED, "reason": "cancelled"}
        try:
            outcome = await self._execute(session, launcher, outbox)
        except Exception as exc:
            logger.exception("Session %s failed unexpectedly", session.id)
            outcome = {"state": SessionState.FAILED, "reason": "error", "error": str(exc) or type(exc).__name__}
        finally:
            try:
                await self._complete(session, outbox, outcome)
            finally:
                asyncio.get_running_loop().call_later(self.retention, self._evict, session.id)

    async def _complete(self, session: Session, outbox: SessionOutbox, outcome: Dict[str, Any]) -> None:
        self._finish(session, outbox, outcome)
        await outbox.aclose()
        self._done[session.id].set()

    async def _execute(
        self,
        session: Session,
        launcher: ProcessLauncher,
        outbox: SessionOutbox,
    ) -> Dict[str, Any]:
        scope = self.workspaces.acquire(session.id)
        session.workspace_path = str(scope.path)
        try:
            return await self._execute_in(session, launcher, outbox, scope)
        finally:
            await self.workspaces.release(scope)

    async def _execute_in(
        self,
        session: Session,
        launcher: ProcessLauncher,
        outbox: SessionOutbox,
        scope: WorkspaceScope,
    ) -> Dict[str, Any]:
        if session.cancel_requested.is_set():
            return {"state": SessionState.CANCELLED, "reason": "cancelled"}
        try:
            self.workspaces.materialize(scope, session.request.project_ref)
            process = await launcher.start(scope, session.request.source, self.workspaces)
        except (LaunchError, ValidationError) as exc:
            logger.warning("Session %s could not be launched: %s", session.id, exc)
            return {"state": SessionState.FAILED, "reason": "error", "error": str(exc)}

        with self._lock:
            self._processes[session.id] = process
        pump: Optional[asyncio.Task] = None
        try:
            session.transition(SessionState.RUNNING)
            outbox.emit(ExecutionStartEvent(session_id=session.id, sequence=session.next_sequence()))
            multiplexer = OutputMultiplexer(session, outbox, self.chunk_size)
            pump = asyncio.create_task(multiplexer.pump(process.stdout, process.stderr))
            outcome = await self._supervise(session, process)
            process.sweep()
            try:
                await asyncio.wait_for(pump, timeout=self.kill_grace)
            except asyncio.TimeoutError:
                logger.warning(
                    "Session %s: output still open %.1fs after exit; closing streams",
                    session.id,
                    self.kill_grace,
                )
        except BaseException:
            # never leave a child behind, whatever went wrong above
            process.sweep()
            if pump is not None:
                pump.cancel()
            raise
        finally:
            with self._lock:
                self._processes.pop(session.id, None)
            process.close()
        return outcome

    async def _supervise(self, session: Session, process: LaunchedProcess) -> Dict[str, Any]:
        exited = asyncio.create_task(process.wait())
        cancelled = asyncio.create_task(session.cancel_requested.wait())
        try:
            done, _ = await asyncio.wait(
                {exited, cancelled},
                timeout=self.timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
        if exited in done:
            exit_code = exited.result()
            state = SessionState.SUCCEEDED if exit_code == 0 else SessionState.FAILED
            return {"state": state, "reason": "exit", "exit_code": exit_code}

        if cancelled in done:
            logger.info("Cancelling session %s", session.id)
            outcome = {"state": SessionState.CANCELLED, "reason": "cancelled"}
        else:
            logger.info("Session %s exceeded %.1fs; terminating", session.id, self.timeout)
            outcome = {"state": SessionState.TIMED_OUT, "reason": "timeout"}
        try:
            await process.stop(self.kill_grace)
        finally:
            exited.cancel()
        return outcome

    def _finish(self, session: Session, outbox: SessionOutbox, outcome: Dict[str, Any]) -> None:
        session.exit_code = outcome.get("exit_code")
        session.reason = outcome["reason"]
        session.error = outcome.get("error")
        session.transition(outcome["state"])
        outbox.emit(
            ExecutionCompleteEvent(
                session_id=session.id,
                sequence=session.next_sequence(),
                exit_code=session.exit_code,
                reason=session.reason,
                error=session.error,
            )
        )
        logger.info(
            "Session %s finished: state=%s exit_code=%s",
            session.id,
            session.state.value,
            session.exit_code,
        )

    def _evict(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._tasks.pop(session_id, None)
            self._done.pop(session_id, None)
        logger.debug("Evicted session %s", session_id)
