"""Resource limit exceptions raised inside the sandbox.

These derive from BaseException so that a script's ``except Exception``
cannot swallow a limit violation.
"""


class ResourceLimitExceeded(BaseException):
    """Base for every host-enforced limit."""
    kind = "ResourceLimitExceeded"


class TimeoutExceeded(ResourceLimitExceeded):
    """Raised when a run outlives its wall-clock deadline."""
    kind = "TimeoutExceeded"


class MemoryExceeded(ResourceLimitExceeded):
    """Raised when a run's resident memory passes the configured limit."""
    kind = "MemoryExceeded"


class ApiCallLimitExceeded(ResourceLimitExceeded):
    """Raised by the mock API once the call ceiling is passed."""
    kind = "ApiCallLimitExceeded"

    def __init__(self, limit: int, method: str = ""):
        super().__init__(f"API call limit exceeded ({limit})")
        self.limit = limit
        self.method = method
