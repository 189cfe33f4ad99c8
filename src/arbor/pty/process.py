"""Process-tree discovery and signal delivery.

Discovery is never cached: a tree is queried right before it is signaled.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Protocol

logger = logging.getLogger(__name__)


class ProcessTree(Protocol):
    """Answers "which processes are direct children of ``pid``?"."""

    def children_of(self, pid: int) -> list[int]: ...


class PgrepProcessTree:
    """Process tree backed by ``pgrep -P``."""

    def __init__(self, timeout: float = 2.0) -> None:
        self._timeout = timeout

    def children_of(self, pid: int) -> list[int]:
        try:
            result = subprocess.run(
                ["pgrep", "-P", str(pid)],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("pgrep failed for %d: %s", pid, e)
            return []

        # pgrep exits 1 when nothing matched
        if result.returncode != 0:
            return []

        children: list[int] = []
        for line in result.stdout.splitlines():
            try:
                children.append(int(line.strip()))
            except ValueError:
                continue
        return children


def descendants(tree: ProcessTree, pid: int) -> list[int]:
    """All descendants of ``pid``, deepest first, without duplicates.

    A child's own descendants come before the child, so signaling the list
    in order never signals a parent before its children.
    """
    ordered: list[int] = []
    seen: set[int] = {pid}

    def visit(parent: int) -> None:
        for child in tree.children_of(parent):
            if child in seen:
                continue
            seen.add(child)
            visit(child)
            ordered.append(child)

    visit(pid)
    return ordered


def is_alive(pid: int) -> bool:
    """Whether ``pid`` exists (signal 0 probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def send_signal(pid: int, sig: int) -> bool:
    """Deliver ``sig`` to ``pid``. Returns False instead of raising."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, sig)
    except (ProcessLookupError, PermissionError) as e:
        logger.debug("Could not send %s to %d: %s", signal_name(sig), pid, e)
        return False
    return True


def signal_group(pid: int, sig: int) -> bool:
    """Deliver ``sig`` to the process group led by ``pid``."""
    if pid <= 0:
        return False
    try:
        os.killpg(pid, sig)
    except (ProcessLookupError, PermissionError) as e:
        logger.debug("Could not send %s to group %d: %s", signal_name(sig), pid, e)
        return False
    return True


def process_name(pid: int) -> str | None:
    """Command name of ``pid`` as reported by ``ps``, if it still exists."""
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "comm="],
            capture_output=True,
            text=True,
            timeout=2.0,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    name = result.stdout.strip()
    return name or None


def signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)
