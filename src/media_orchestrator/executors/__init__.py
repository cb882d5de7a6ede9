"""Built-in executors and generators."""

from media_orchestrator.executors.builtin import (
    DirectoryListingGenerator,
    EchoExecutor,
    FailExecutor,
    SleepExecutor,
    register_builtin_executors,
)

__all__ = [
    "DirectoryListingGenerator",
    "EchoExecutor",
    "FailExecutor",
    "SleepExecutor",
    "register_builtin_executors",
]
