"""Commands, their identifiers and the executors that run them."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Hashable, Sequence
from dataclasses import dataclass
from typing import Any

LogIndex = int
"""Index of an entry in the replicated log."""

ServerId = str
"""Identifier of a server in the cluster."""


@dataclass(frozen=True)
class ProposeId:
    """Identifier of a proposed command."""

    value: str

    def __str__(self) -> str:
        return f'"{self.value}"'


def is_conflict(key: Any, other: Any) -> bool:
    """Tell whether two keys conflict.

    Keys with their own ``is_conflict`` method decide for themselves;
    other keys conflict when they are equal.
    """
    check = getattr(key, "is_conflict", None)
    if callable(check):
        return bool(check(other))
    return key == other


class Command(ABC):
    """A command to execute on the server side."""

    @abstractmethod
    def keys(self) -> Sequence[Hashable]:
        """Keys the command touches, used to tell conflicts."""

    @abstractmethod
    def id(self) -> ProposeId:
        """The propose id of the command."""

    def is_conflict(self, other: Command) -> bool:
        """Tell whether any key of this command conflicts with one of ``other``."""
        return any(is_conflict(mine, theirs) for mine in self.keys() for theirs in other.keys())

    async def execute(self, executor: CommandExecutor) -> Any:
        """Execute the command with ``executor``."""
        return await executor.execute(self)

    async def after_sync(self, executor: CommandExecutor, index: LogIndex) -> Any:
        """Run the after-sync callback of the command with ``executor``."""
        return await executor.after_sync(self, index)


class CommandExecutor(ABC):
    """Runs commands; supplied by the user of the protocol."""

    @abstractmethod
    async def execute(self, cmd: Command) -> Any:
        """Execute ``cmd`` and return its execution result."""

    @abstractmethod
    async def after_sync(self, cmd: Command, index: LogIndex) -> Any:
        """Run the after-sync callback of ``cmd`` at log ``index``."""

    @abstractmethod
    async def reset(self) -> None:
        """Reset the executor to its initial state."""

    @abstractmethod
    def last_applied(self) -> LogIndex:
        """Index of the last log entry applied to the executor."""