"""
Cancellation helpers.

A cancellation signal is a plain threading.Event shared by every unit of
work in a fan-out. Setting it aborts backoff waits, pending dials and
in-flight commands.
"""

import threading
from typing import Optional

from clusterctl.core.errors import OperationCancelled


def is_cancelled(cancel: Optional[threading.Event]) -> bool:
    return cancel is not None and cancel.is_set()


def raise_if_cancelled(cancel: Optional[threading.Event], operation: str) -> None:
    """Raise OperationCancelled if the event is already set."""
    if is_cancelled(cancel):
        raise OperationCancelled(f"{operation}: cancelled")


def wait_or_cancel(cancel: Optional[threading.Event], seconds: float) -> bool:
    """
    Sleep for `seconds` unless cancelled first.

    Returns:
        True if the wait was interrupted by cancellation.
    """
    if cancel is None:
        threading.Event().wait(seconds)
        return False
    return cancel.wait(seconds)
