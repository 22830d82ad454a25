from vcopilot.interactive.browser import RelayClient
from vcopilot.interactive.jobs import InteractiveJob, JobStore
from vcopilot.interactive.poller import poll_for_completion
from vcopilot.interactive.sender import DispatchResult, dispatch_prompt
from vcopilot.interactive.session import InteractiveSession

__all__ = [
    "DispatchResult",
    "InteractiveJob",
    "InteractiveSession",
    "JobStore",
    "RelayClient",
    "dispatch_prompt",
    "poll_for_completion",
]
