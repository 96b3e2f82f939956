"""
Local command executor.

Runs shell commands on this machine with the same run() signature as
SSHExecutorPool, so local-mode detection shares the parsing code used
against remote hosts. The host argument is only used for labelling.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from typing import Optional

from clusterctl.core.cancel import raise_if_cancelled
from clusterctl.core.errors import OperationCancelled
from clusterctl.ssh.models import ExecutionResult, SSHErrorCategory

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"
POLL_INTERVAL = 0.05


class LocalExecutor:
    """Run commands through /bin/sh on the local machine."""

    def __init__(self, shell: str = "/bin/sh", log: Optional[logging.Logger] = None):
        self.shell = shell
        self.log = log or logger

    def run(
        self,
        host: str,
        command: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        input_data: Optional[str] = None,
    ) -> ExecutionResult:
        raise_if_cancelled(cancel, f"[{host}] {command}")
        start_time = time.time()

        try:
            proc = subprocess.Popen(
                [self.shell, "-c", command],
                stdin=subprocess.PIPE if input_data is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as e:
            return ExecutionResult(
                host=host,
                command=command,
                error=f"[{host}] failed to start {self.shell}: {e}",
                error_category=SSHErrorCategory.UNKNOWN,
            )

        outcome = {}
        done = threading.Event()

        def communicate():
            try:
                outcome["stdout"], outcome["stderr"] = proc.communicate(input=input_data)
            finally:
                done.set()

        threading.Thread(target=communicate, name=f"local-run-{host}", daemon=True).start()

        deadline = time.time() + timeout if timeout else None
        while not done.wait(POLL_INTERVAL):
            if cancel is not None and cancel.is_set():
                _kill_group(proc)
                raise OperationCancelled(f"[{host}] command cancelled: {command}")
            if deadline is not None and time.time() > deadline:
                _kill_group(proc)
                done.wait()
                return ExecutionResult(
                    host=host,
                    command=command,
                    error=f"command timed out after {timeout}s",
                    duration_ms=(time.time() - start_time) * 1000,
                    error_category=SSHErrorCategory.CONNECTION_TIMEOUT,
                )

        exit_status = proc.returncode
        return ExecutionResult(
            host=host,
            command=command,
            stdout=outcome.get("stdout") or "",
            stderr=outcome.get("stderr") or "",
            exit_status=exit_status,
            duration_ms=(time.time() - start_time) * 1000,
            error_category=SSHErrorCategory.SUCCESS if exit_status == 0 else SSHErrorCategory.COMMAND_FAILED,
        )


def _kill_group(proc: subprocess.Popen) -> None:
    """SIGKILL the shell and everything it started."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
