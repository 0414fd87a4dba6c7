"""
Scheduler Module

Background re-embedding of new and edited messages.
"""

from .reembedding import (
    ReembeddingScheduler,
    RunState,
    RunStatus,
    RunTrigger,
    JOB_NAME,
)

__all__ = [
    "ReembeddingScheduler",
    "RunState",
    "RunStatus",
    "RunTrigger",
    "JOB_NAME",
]
