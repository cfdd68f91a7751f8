"""
Process census for admission control.

Counts the sibling worker processes that are alive right now by listing the
OS process table and matching each command line against the launcher's
static invocation signature. Every count is a fresh sample; nothing is cached.
"""

from __future__ import annotations

import os
from collections.abc import Sequence

import psutil
import structlog

logger = structlog.get_logger(__name__)


class CensusUnavailableError(Exception):
    """Raised when the process table cannot be listed at all."""


def _matches(cmdline: Sequence[str], program: str, signature: Sequence[str]) -> bool:
    """
    Check whether an argv runs ``program`` with ``signature`` as its arguments.

    The program token may be a bare name or a path, and may be preceded by an
    interpreter (``python``, ``ruby``). Shell wrappers like ``sh -c "<cmd>"``
    carry the whole command in one token and therefore do not match.
    """
    width = len(signature)
    for index, token in enumerate(cmdline):
        if os.path.basename(token) != program:
            continue
        if tuple(cmdline[index + 1 : index + 1 + width]) == tuple(signature):
            return True
    return False


class ProcessCensus:
    """
    Counts live processes that share the launcher's invocation signature.

    The raw count includes the launcher itself when it was started with the
    same signature; ``running_workers`` removes it.
    """

    def __init__(self, program: str, signature: Sequence[str]) -> None:
        self._program = os.path.basename(program)
        self._signature = tuple(signature)
        self._log = logger.bind(component="process_census", program=self._program)

    @property
    def signature(self) -> tuple[str, ...]:
        return self._signature

    def count(self) -> int:
        """
        Count processes whose command line matches the signature.

        Raises:
            CensusUnavailableError: If the process table cannot be listed
        """
        try:
            processes = list(psutil.process_iter(["cmdline"]))
        except (psutil.Error, OSError) as e:
            raise CensusUnavailableError(f"Cannot list running processes: {e}") from e

        # Processes that vanish or deny access report a cmdline of None.
        total = sum(
            1
            for process in processes
            if process.info.get("cmdline")
            and _matches(process.info["cmdline"], self._program, self._signature)
        )

        self._log.debug("Counted sibling processes", count=total)
        return total

    def matches_current_process(self) -> bool:
        """Whether this process would be counted by its own census."""
        try:
            cmdline = psutil.Process().cmdline()
        except psutil.Error as e:
            raise CensusUnavailableError(f"Cannot read own command line: {e}") from e
        return _matches(cmdline, self._program, self._signature)

    def running_workers(self, counts_self: bool = True) -> int:
        """
        Sample the number of running workers, excluding the launcher.

        A result that would go negative is clamped to zero.
        """
        raw = self.count()
        running = raw - 1 if counts_self else raw
        if running < 0:
            self._log.debug("Clamping implausible process count", raw=raw)
            return 0
        return running
