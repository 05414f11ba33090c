from .async_utils import (
    PollStoppedError,
    PollTimeoutError,
    RaceFailedError,
    first_success,
    guarded_call,
    poll_until,
    wait_with_stop,
)
from .logging import log_event, mask_secrets

__all__ = [
    "PollStoppedError",
    "PollTimeoutError",
    "RaceFailedError",
    "first_success",
    "guarded_call",
    "log_event",
    "mask_secrets",
    "poll_until",
    "wait_with_stop",
]
