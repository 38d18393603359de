"""Startup detection from mongod's log output.

mongod reports success or failure on stdout.  :class:`ReadinessMonitor` reads
stdout and stderr on two daemon threads so neither pipe can fill up and stall
the server.  The stdout reader classifies each line against
:data:`READINESS_RULES` until one matches, publishes that single event, and then
keeps relaying lines to the log without classifying them.

The patterns are borrowed from mongodb-memory-server's MongoInstance.
"""

from __future__ import annotations

import enum
import logging
import queue
import re
import threading
from dataclasses import dataclass
from typing import IO, NamedTuple, Union

logger = logging.getLogger(__name__)


class StartupFailure(enum.Enum):
    """Why a mongod launch did not produce a usable server."""

    ADDRESS_IN_USE = "address in use"
    ALREADY_RUNNING = "already running"
    PERMISSION_DENIED = "permission denied"
    DATA_DIRECTORY_NOT_FOUND = "data directory not found"
    SHUTTING_DOWN = "server shut down"
    INVALID_PORT = "could not parse port"
    EXITED_EARLY = "exited before startup completed"
    TIMEOUT = "timed out waiting for startup"
    REPLICA_SET_INIT = "replica set initiation failed"


class StartupError(RuntimeError):
    """Raised when mongod fails to start; ``kind`` tells callers why."""

    def __init__(self, kind: StartupFailure, detail: str | None = None) -> None:
        self.kind = kind
        self.detail = detail
        message = f"mongod startup failed, {kind.value}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass(frozen=True)
class Ready:
    port: int


@dataclass(frozen=True)
class Failed:
    kind: StartupFailure
    line: str = ""

    def to_error(self) -> StartupError:
        return StartupError(self.kind, self.line or None)


ReadinessEvent = Union[Ready, Failed]


class ReadinessRule(NamedTuple):
    pattern: re.Pattern[str]
    failure: StartupFailure | None  # None marks the ready rule


# Evaluated top to bottom against the lower-cased line; the first match wins.
READINESS_RULES: tuple[ReadinessRule, ...] = (
    ReadinessRule(re.compile(r"waiting for connections.*port\D*(\d+)"), None),
    ReadinessRule(re.compile(r"addr already in use"), StartupFailure.ADDRESS_IN_USE),
    ReadinessRule(re.compile(r"mongod already running"), StartupFailure.ALREADY_RUNNING),
    ReadinessRule(re.compile(r"mongod permission denied"), StartupFailure.PERMISSION_DENIED),
    ReadinessRule(re.compile(r"data directory .*? not found"), StartupFailure.DATA_DIRECTORY_NOT_FOUND),
    ReadinessRule(re.compile(r"shutting down with code"), StartupFailure.SHUTTING_DOWN),
)


def classify_line(
    line: str, rules: tuple[ReadinessRule, ...] = READINESS_RULES
) -> ReadinessEvent | None:
    """Classify one log line.

    Args:
        line: A line of mongod stdout.
        rules: Ordered rule table.

    Returns:
        The event for the first matching rule, or None if no rule matches.
    """
    lowered = line.lower()
    for rule in rules:
        match = rule.pattern.search(lowered)
        if match is None:
            continue
        if rule.failure is not None:
            return Failed(rule.failure, line)
        try:
            port = int(match.group(1))
        except (IndexError, ValueError):
            return Failed(StartupFailure.INVALID_PORT, line)
        if not 0 < port < 65536:
            return Failed(StartupFailure.INVALID_PORT, line)
        return Ready(port)
    return None


class ReadinessMonitor:
    """Drains a mongod process's output and reports its single startup outcome."""

    def __init__(
        self,
        stdout: IO[bytes] | None,
        stderr: IO[bytes] | None = None,
        rules: tuple[ReadinessRule, ...] = READINESS_RULES,
    ) -> None:
        self._stdout = stdout
        self._stderr = stderr
        self._rules = rules
        self._events: queue.Queue[ReadinessEvent] = queue.Queue(maxsize=1)
        self._readers: list[tuple[threading.Thread, IO[bytes]]] = []

    def start(self) -> None:
        """Start the reader threads."""
        if self._stdout is not None:
            reader = threading.Thread(
                target=self._read_stdout, args=(self._stdout,), daemon=True, name="MongodStdout"
            )
            self._readers.append((reader, self._stdout))
        else:
            # Nothing will ever be classified
            self._events.put(Failed(StartupFailure.EXITED_EARLY))
        if self._stderr is not None:
            reader = threading.Thread(
                target=self._read_stderr, args=(self._stderr,), daemon=True, name="MongodStderr"
            )
            self._readers.append((reader, self._stderr))
        for thread, _ in self._readers:
            thread.start()

    def wait(self, timeout: float | None = None) -> ReadinessEvent | None:
        """Block until the startup outcome is known.

        Args:
            timeout: Seconds to wait; None waits forever.

        Returns:
            The startup event, or None if *timeout* elapsed first.
        """
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def join(self, timeout: float | None = None) -> None:
        """Wait for the readers to hit EOF (i.e. for the process's pipes to close)."""
        for thread, _ in self._readers:
            thread.join(timeout=timeout)

    def close(self, timeout: float = 2.0) -> None:
        """Join the readers and close their streams.

        Call after the process has exited.  A stream whose reader is still
        blocked after *timeout* is left open and logged.
        """
        for thread, stream in self._readers:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("%s reader still running, leaving its pipe open", thread.name)
                continue
            stream.close()

    def _read_stdout(self, stream: IO[bytes]) -> None:
        published = False
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                logger.debug("[mongod stdout] %s", line)
                if published:
                    continue
                event = classify_line(line, self._rules)
                if event is not None:
                    self._events.put(event)
                    published = True
        except (OSError, ValueError) as exc:
            logger.warning("Reading mongod stdout failed: %s", exc)

        if not published:
            self._events.put(Failed(StartupFailure.EXITED_EARLY))

    def _read_stderr(self, stream: IO[bytes]) -> None:
        try:
            for raw in iter(stream.readline, b""):
                logger.debug("[mongod stderr] %s", raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except (OSError, ValueError) as exc:
            logger.warning("Reading mongod stderr failed: %s", exc)
