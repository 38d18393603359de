"""Watchdog process that kills mongod if the process that started it dies.

A thread would die with its owner, so the watchdog is a separate interpreter
started in its own session::

    python -m memongo.monitor <owner_pid> <child_pid> [--interval SECONDS]

It does nothing while the owner is alive, exits when the child exits on its
own, and kills the child as soon as the owner is gone.  Liveness checks go
through :meth:`psutil.Process.is_running`, which compares creation times and
so is not fooled by PID reuse.  An unreaped zombie counts as dead.
"""

from __future__ import annotations

import argparse
import logging
import subprocess
import sys
import time

import psutil

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 0.5


def spawn(owner_pid: int, child_pid: int, interval: float = DEFAULT_INTERVAL) -> subprocess.Popen[bytes]:
    """Start a detached watchdog for *child_pid* on behalf of *owner_pid*.

    Args:
        owner_pid: PID whose death should take the child down with it.
        child_pid: PID of the mongod process.
        interval: Seconds between liveness checks.

    Returns:
        Handle of the watchdog process; pass it to :func:`terminate`.
    """
    cmd = [
        sys.executable,
        "-m",
        "memongo.monitor",
        str(owner_pid),
        str(child_pid),
        "--interval",
        str(interval),
    ]
    return subprocess.Popen(
        cmd,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        close_fds=True,
        start_new_session=True,
    )


def terminate(handle: subprocess.Popen[bytes], timeout: float = 5.0) -> None:
    """Kill the watchdog and reap it.

    Raises:
        OSError: If the process cannot be signalled.
        subprocess.TimeoutExpired: If it does not exit within *timeout*.
    """
    if handle.poll() is None:
        handle.kill()
    handle.wait(timeout=timeout)


def watch(owner_pid: int, child_pid: int, interval: float = DEFAULT_INTERVAL) -> int:
    """Supervise *child_pid* until it exits or *owner_pid* dies.

    Returns:
        Process exit code: 0 in every normal outcome.
    """
    try:
        child = psutil.Process(child_pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        owner: psutil.Process | None = psutil.Process(owner_pid)
    except psutil.NoSuchProcess:
        owner = None

    while owner is not None and _is_alive(owner):
        if not _is_alive(child):
            return 0
        time.sleep(interval)

    if _is_alive(child):
        logger.info("Owner %d is gone, killing mongod %d", owner_pid, child_pid)
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    return 0


def _is_alive(proc: psutil.Process) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="python -m memongo.monitor",
        description="Kill a mongod process once its owner exits.",
    )
    parser.add_argument("owner_pid", type=int)
    parser.add_argument("child_pid", type=int)
    parser.add_argument("--interval", type=float, default=DEFAULT_INTERVAL)
    args = parser.parse_args(argv)
    return watch(args.owner_pid, args.child_pid, args.interval)


if __name__ == "__main__":
    sys.exit(main())
