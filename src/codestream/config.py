"""Configuration loader.

The execution service reads its configuration from environment variables so
the same image can run under docker-compose, as a sidecar of an editor
backend, or locally during development.  Reasonable defaults are provided so
that local development works out of the box.

Environment variables:

``CODESTREAM_WORKSPACE_PATH``
    Base directory under which a scratch directory is created for every
    execution.  Defaults to ``<system temp>/codestream``.

``CODESTREAM_PROJECTS_PATH``
    Optional directory holding one sub-directory per project.  When set, the
    files of the referenced project are copied into the execution workspace
    before the snippet runs.

``CODESTREAM_ALLOWED_LANGS``
    Comma-separated allow-list of languages.  Defaults to
    ``python,javascript``.  ``bash`` is also available.

``CODESTREAM_PYTHON_BIN`` / ``CODESTREAM_NODE_BIN`` / ``CODESTREAM_BASH_BIN``
    Interpreter executables.  Default to ``python3``, ``node`` and ``bash``.

``CODESTREAM_MAX_SOURCE_BYTES``
    Largest accepted source snippet, in bytes.  Default is 65536.

``CODESTREAM_EXECUTION_TIMEOUT_SECONDS``
    Wall-clock limit of a single execution.  Default is 10.

``CODESTREAM_KILL_GRACE_SECONDS``
    Time a process group gets to exit after ``SIGTERM`` before it is
    ``SIGKILL``-ed.  Also bounds how long remaining output is drained after
    the process is gone.  Default is 2.

``CODESTREAM_OUTPUT_QUEUE_SIZE`` / ``CODESTREAM_SUBSCRIBER_QUEUE_SIZE``
    Capacity of the per-session outbox and of each observer's queue.  When a
    queue is full the oldest output event is dropped and an ``overflow``
    event is delivered instead.  Default is 1024 for both.

``CODESTREAM_READ_CHUNK_SIZE``
    Maximum number of bytes read from a pipe per ``output`` event.  Default
    is 4096.

``CODESTREAM_SESSION_RETENTION_SECONDS``
    How long a finished session stays queryable before it is evicted.
    Default is 60.

``CODESTREAM_RELEASE_RETRIES`` / ``CODESTREAM_RELEASE_BACKOFF_SECONDS``
    Retry policy for removing a workspace directory.  Defaults are 3 retries
    starting at 0.1 seconds, doubling each time.

``CODESTREAM_WS_BROADCAST``
    If ``true``, WebSocket connections receive the events of every session
    by default instead of only the sessions they submitted or subscribed
    to.  Defaults to ``false``.

``CODESTREAM_LOG_LEVEL``
    Level of the ``codestream`` logger.  Defaults to ``INFO``.

``PORT``
    The port on which the API server listens.  Defaults to 8080.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import List, Optional


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y"}


@dataclass
class Config:
    """Centralised configuration object."""

    workspace_path: str
    projects_path: Optional[str]
    allowed_langs: List[str]
    python_bin: str
    node_bin: str
    bash_bin: str
    max_source_bytes: int
    execution_timeout_seconds: float
    kill_grace_seconds: float
    output_queue_size: int
    subscriber_queue_size: int
    read_chunk_size: int
    session_retention_seconds: float
    release_retries: int
    release_backoff_seconds: float
    ws_broadcast: bool
    log_level: str
    port: int

    @classmethod
    def load(cls) -> "Config":
        workspace_path = os.getenv(
            "CODESTREAM_WORKSPACE_PATH",
            os.path.join(tempfile.gettempdir(), "codestream"),
        )
        projects_path = os.getenv("CODESTREAM_PROJECTS_PATH") or None

        allowed_langs_env = os.getenv("CODESTREAM_ALLOWED_LANGS", "python,javascript")
        allowed_langs = [lang.strip().lower() for lang in allowed_langs_env.split(",") if lang.strip()]

        def _int_var(name: str, default: int) -> int:
            val = os.getenv(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                raise ValueError(f"Invalid integer for {name}: {val}")

        def _float_var(name: str, default: float) -> float:
            val = os.getenv(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                raise ValueError(f"Invalid number for {name}: {val}")

        return cls(
            workspace_path=workspace_path,
            projects_path=projects_path,
            allowed_langs=allowed_langs,
            python_bin=os.getenv("CODESTREAM_PYTHON_BIN", "python3"),
            node_bin=os.getenv("CODESTREAM_NODE_BIN", "node"),
            bash_bin=os.getenv("CODESTREAM_BASH_BIN", "bash"),
            max_source_bytes=_int_var("CODESTREAM_MAX_SOURCE_BYTES", 65536),
            execution_timeout_seconds=_float_var("CODESTREAM_EXECUTION_TIMEOUT_SECONDS", 10.0),
            kill_grace_seconds=_float_var("CODESTREAM_KILL_GRACE_SECONDS", 2.0),
            output_queue_size=_int_var("CODESTREAM_OUTPUT_QUEUE_SIZE", 1024),
            subscriber_queue_size=_int_var("CODESTREAM_SUBSCRIBER_QUEUE_SIZE", 1024),
            read_chunk_size=_int_var("CODESTREAM_READ_CHUNK_SIZE", 4096),
            session_retention_seconds=_float_var("CODESTREAM_SESSION_RETENTION_SECONDS", 60.0),
            release_retries=_int_var("CODESTREAM_RELEASE_RETRIES", 3),
            release_backoff_seconds=_float_var("CODESTREAM_RELEASE_BACKOFF_SECONDS", 0.1),
            ws_broadcast=_parse_bool(os.getenv("CODESTREAM_WS_BROADCAST"), False),
            log_level=os.getenv("CODESTREAM_LOG_LEVEL", "INFO").upper(),
            port=_int_var("PORT", 8080),
        )

    @classmethod
    def from_env(cls) -> "Config":
        """
        Alternate constructor used by the API to load configuration.

        This wrapper calls :meth:`load` to construct the configuration.
        It exists to provide a more intuitive name when consumed in
        application code.
        """
        return cls.load()
