"""Messages exchanged between clients and servers, and their encoding."""

from __future__ import annotations

import pickle
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from curp.cmd import Command, LogIndex, ProposeId, ServerId
from curp.errors import EncodeError, ProposeError, ProtocolError

R = TypeVar("R")

_DECODE_ERRORS = (
    pickle.UnpicklingError,
    EOFError,
    AttributeError,
    ImportError,
    IndexError,
    TypeError,
    ValueError,
)


def encode(value: Any) -> bytes:
    """Serialize ``value`` to bytes, raising ``EncodeError`` on failure."""
    try:
        return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError) as exc:
        raise EncodeError(str(exc)) from exc


def decode(data: bytes) -> Any:
    """Deserialize bytes made by ``encode``, raising ``EncodeError`` on failure."""
    try:
        return pickle.loads(data)
    except _DECODE_ERRORS as exc:
        raise EncodeError(str(exc)) from exc


@dataclass
class LogEntry:
    """An entry of the replicated log."""

    term: int
    index: LogIndex
    cmd: Command


@dataclass(frozen=True)
class FetchLeaderRequest:
    """Ask a server who it thinks the leader is."""


@dataclass(frozen=True)
class FetchLeaderResponse:
    """A server's view of the leader and term."""

    leader_id: ServerId | None
    term: int


@dataclass(frozen=True)
class ProposeRequest:
    """A proposal carrying an encoded command."""

    command: bytes

    @classmethod
    def from_command(cls, cmd: Command) -> ProposeRequest:
        """Build a request carrying ``cmd``."""
        return cls(encode(cmd))

    def cmd(self) -> Command:
        """Decode the carried command."""
        return decode(self.command)


@dataclass(frozen=True)
class ProposeResponse:
    """Answer to a proposal: an encoded result, an encoded error, or neither."""

    leader_id: ServerId | None
    term: int
    result: bytes | None = None
    error: bytes | None = None

    def __post_init__(self) -> None:
        if self.result is not None and self.error is not None:
            raise ValueError("a propose response holds a result or an error, not both")

    @classmethod
    def new_result(cls, leader_id: ServerId | None, term: int, result: Any) -> ProposeResponse:
        """Build a response carrying an execution result."""
        return cls(leader_id, term, result=encode(result))

    @classmethod
    def new_empty(cls, leader_id: ServerId | None, term: int) -> ProposeResponse:
        """Build a response carrying no result."""
        return cls(leader_id, term)

    @classmethod
    def new_error(
        cls, leader_id: ServerId | None, term: int, error: ProposeError
    ) -> ProposeResponse:
        """Build a response carrying a propose error."""
        return cls(leader_id, term, error=encode(error))

    def map_or_else(
        self,
        success: Callable[[Any], R],
        failure: Callable[[ProposeError], R],
    ) -> R:
        """Pass the decoded result (or None) to ``success``, or the error to ``failure``."""
        if self.result is not None:
            return success(decode(self.result))
        if self.error is not None:
            return failure(decode(self.error))
        return success(None)


@dataclass(frozen=True)
class WaitSyncedRequest:
    """Ask the leader to wait until a command is synced."""

    id: bytes

    @classmethod
    def from_id(cls, propose_id: ProposeId) -> WaitSyncedRequest:
        """Build a request for the command with ``propose_id``."""
        return cls(encode(propose_id))

    def propose_id(self) -> ProposeId:
        """Decode the carried propose id."""
        return decode(self.id)


class SyncError:
    """Why waiting for a command to be synced failed."""


@dataclass(frozen=True)
class Redirect(SyncError):
    """The request went to a server that is not the leader."""

    leader_id: ServerId | None
    term: int


@dataclass(frozen=True)
class ExecuteError(SyncError):
    """Executing the command went wrong."""

    message: str


@dataclass(frozen=True)
class AfterSyncError(SyncError):
    """The after-sync callback of the command went wrong."""

    message: str


@dataclass(frozen=True)
class NoSuchCmd(SyncError):
    """There is no such command to wait for."""

    propose_id: ProposeId


@dataclass(frozen=True)
class SyncTimeout(SyncError):
    """Waiting timed out."""


@dataclass(frozen=True)
class SyncSuccess:
    """A synced command with its after-sync and execution results."""

    asr: Any
    er: Any


@dataclass(frozen=True)
class WaitSyncedResponse:
    """Answer to a wait-synced request: encoded results or an encoded error."""

    after_sync_result: bytes | None = None
    exe_result: bytes | None = None
    error: bytes | None = None

    @classmethod
    def new_success(cls, asr: Any, er: Any) -> WaitSyncedResponse:
        """Build a success response."""
        return cls(after_sync_result=encode(asr), exe_result=encode(er))

    @classmethod
    def new_error(cls, err: SyncError) -> WaitSyncedResponse:
        """Build an error response."""
        return cls(error=encode(err))

    @classmethod
    def new_from_result(cls, er: Any, asr: Any) -> WaitSyncedResponse:
        """Build a response from the execution and after-sync outcomes.

        Each outcome is None when it is missing, an exception when it failed,
        and the result otherwise.
        """
        if er is None:
            if asr is not None:
                raise ProtocolError("should not call after sync if execution fails")
            return cls.new_error(AfterSyncError("can't get er result"))
        if isinstance(er, BaseException):
            if asr is not None:
                raise ProtocolError("should not call after_sync when exe failed")
            return cls.new_error(ExecuteError(str(er)))
        if asr is None:
            return cls.new_error(AfterSyncError("can't get after sync result"))
        if isinstance(asr, BaseException):
            return cls.new_error(AfterSyncError(str(asr)))
        return cls.new_success(asr, er)

    def into_result(self) -> SyncSuccess | SyncError:
        """Decode into a ``SyncSuccess`` or the ``SyncError`` it carries."""
        if self.error is not None:
            return decode(self.error)
        if self.after_sync_result is None or self.exe_result is None:
            raise ProtocolError("WaitSyncedResponse should contain valid sync_result")
        return SyncSuccess(asr=decode(self.after_sync_result), er=decode(self.exe_result))


@dataclass(frozen=True)
class AppendEntriesRequest:
    """Replicate log entries, or a heartbeat when there are none."""

    term: int
    leader_id: ServerId
    prev_log_index: LogIndex
    prev_log_term: int
    entries: list[bytes] = field(default_factory=list)
    leader_commit: LogIndex = 0

    @classmethod
    def new(
        cls,
        term: int,
        leader_id: ServerId,
        prev_log_index: LogIndex,
        prev_log_term: int,
        entries: Iterable[LogEntry],
        leader_commit: LogIndex,
    ) -> AppendEntriesRequest:
        """Build a request carrying ``entries``."""
        return cls(
            term,
            leader_id,
            prev_log_index,
            prev_log_term,
            [encode(entry) for entry in entries],
            leader_commit,
        )

    @classmethod
    def new_heartbeat(
        cls,
        term: int,
        leader_id: ServerId,
        prev_log_index: LogIndex,
        prev_log_term: int,
        leader_commit: LogIndex,
    ) -> AppendEntriesRequest:
        """Build a heartbeat request with no entries."""
        return cls(term, leader_id, prev_log_index, prev_log_term, [], leader_commit)

    def log_entries(self) -> list[LogEntry]:
        """Decode the carried log entries."""
        return [decode(entry) for entry in self.entries]


@dataclass(frozen=True)
class AppendEntriesResponse:
    """Answer to an append-entries request."""

    term: int
    success: bool
    hint_index: LogIndex

    @classmethod
    def new_reject(cls, term: int, hint_index: LogIndex) -> AppendEntriesResponse:
        """Build a rejection pointing at ``hint_index``."""
        return cls(term, False, hint_index)

    @classmethod
    def new_accept(cls, term: int) -> AppendEntriesResponse:
        """Build an acceptance."""
        return cls(term, True, 0)


@dataclass(frozen=True)
class VoteRequest:
    """A candidate's request for a vote."""

    term: int
    candidate_id: ServerId
    last_log_index: LogIndex
    last_log_term: int


@dataclass(frozen=True)
class VoteResponse:
    """Answer to a vote request, with the voter's speculative pool if granted."""

    term: int
    vote_granted: bool
    spec_pool: list[bytes] = field(default_factory=list)

    @classmethod
    def new_accept(cls, term: int, cmds: Iterable[Command]) -> VoteResponse:
        """Grant the vote and hand over the speculative commands."""
        return cls(term, True, [encode(cmd) for cmd in cmds])

    @classmethod
    def new_reject(cls, term: int) -> VoteResponse:
        """Refuse the vote."""
        return cls(term, False, [])

    def spec_pool_commands(self) -> list[Command]:
        """Decode the carried speculative commands."""
        return [decode(cmd) for cmd in self.spec_pool]