from autospec.backends.base import (
    DelegateError,
    DelegateProcessError,
    DelegateResult,
    DelegateTimeoutError,
    StageDelegate,
)
from autospec.backends.claude import ClaudeCodeBackend

__all__ = [
    "ClaudeCodeBackend",
    "DelegateError",
    "DelegateProcessError",
    "DelegateResult",
    "DelegateTimeoutError",
    "StageDelegate",
]
