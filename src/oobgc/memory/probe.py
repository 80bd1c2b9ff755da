"""Resident memory probe for the current worker process."""

import os
import subprocess
from typing import Optional

import psutil

from oobgc.exceptions import MemoryProbeError


class MemoryProbe:
    """Read the resident set size of a process."""

    def __init__(self, pid: Optional[int] = None, ps_command: str = "ps"):
        """
        Initialize memory probe.

        Args:
            pid: Process to measure (None for whichever process is reading,
                resolved on every read so forked workers measure themselves)
            ps_command: Process-listing command used when psutil cannot
                read the process accounting data
        """
        self._pid = pid
        self.ps_command = ps_command
        self._process: Optional[psutil.Process] = None

    @property
    def pid(self) -> int:
        return self._pid if self._pid is not None else os.getpid()

    def read(self) -> int:
        """
        Return resident memory in bytes.

        Raises:
            MemoryProbeError: if neither psutil nor ps could report it
        """
        pid = self.pid
        try:
            return self._read_psutil(pid)
        except psutil.Error as e:
            psutil_error = e

        try:
            return self._read_ps(pid)
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            raise MemoryProbeError(
                pid, f"psutil: {psutil_error}; {self.ps_command}: {e}"
            ) from e

    def read_mb(self) -> float:
        """Return resident memory in megabytes."""
        return self.read() / (1024 * 1024)

    def _read_psutil(self, pid: int) -> int:
        if self._process is None or self._process.pid != pid:
            self._process = psutil.Process(pid)
        return self._process.memory_info().rss

    def _read_ps(self, pid: int) -> int:
        output = subprocess.run(
            [self.ps_command, "-o", "rss=", "-p", str(pid)],
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        ).stdout.strip()
        if not output:
            raise ValueError("no output")
        # ps reports kilobytes
        return int(output.split()[0]) * 1024
