"""Protocol client: proposes commands through the fast and the slow round."""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from curp.cmd import Command, ServerId
from curp.connect import ChannelFactory, Connect, connect
from curp.errors import (
    DuplicatedError,
    ExecutionError,
    ProposeError,
    ProtocolError,
    SyncedError,
)
from curp.messages import (
    FetchLeaderRequest,
    FetchLeaderResponse,
    ProposeRequest,
    ProposeResponse,
    Redirect,
    SyncSuccess,
    SyncTimeout,
    WaitSyncedRequest,
    decode,
)

logger = logging.getLogger(__name__)

_LEADER_CHANNEL_CAPACITY = 1


@dataclass(frozen=True)
class ClientTimeout:
    """Timeouts of the client, in seconds."""

    propose_timeout: float = 1.0
    wait_synced_timeout: float = 2.0
    retry_timeout: float = 0.05


class LaggedError(Exception):
    """The receiver fell behind and some leader changes were dropped."""

    def __init__(self, skipped: int) -> None:
        super().__init__(skipped)
        self.skipped = skipped

    def __str__(self) -> str:
        return f"receiver lagged behind by {self.skipped} messages"


class LeaderReceiver:
    """Receives leader changes; holds at most a bounded number of pending ones."""

    def __init__(self, capacity: int = _LEADER_CHANNEL_CAPACITY) -> None:
        self._capacity = capacity
        self._buffer: deque[ServerId] = deque()
        self._skipped = 0
        self._ready = asyncio.Event()

    def _push(self, server_id: ServerId) -> None:
        if len(self._buffer) >= self._capacity:
            self._buffer.popleft()
            self._skipped += 1
        self._buffer.append(server_id)
        self._ready.set()

    async def recv(self) -> ServerId:
        """Wait for the next leader change.

        Raises ``LaggedError`` once if changes were dropped since the last call.
        """
        while True:
            if self._skipped:
                skipped, self._skipped = self._skipped, 0
                raise LaggedError(skipped)
            if self._buffer:
                return self._buffer.popleft()
            self._ready.clear()
            await self._ready.wait()


class _State:
    """The client's view of the current leader and term."""

    def __init__(self) -> None:
        self.leader: ServerId | None = None
        self.term = 0
        self.leader_event = asyncio.Event()
        self._receivers: weakref.WeakSet[LeaderReceiver] = weakref.WeakSet()

    def subscribe(self) -> LeaderReceiver:
        receiver = LeaderReceiver(_LEADER_CHANNEL_CAPACITY)
        self._receivers.add(receiver)
        return receiver

    def set_leader(self, server_id: ServerId) -> None:
        logger.debug("client update its leader to %s", server_id)
        if self.leader != server_id:
            for receiver in list(self._receivers):
                receiver._push(server_id)
        self.leader = server_id
        self.leader_event.set()

    def update_to_term(self, term: int) -> None:
        self.term = term
        self.leader = None


async def _cancel_all(tasks: Iterable[asyncio.Future[Any]]) -> None:
    pending = list(tasks)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


class Client:
    """Proposes commands to a cluster of servers."""

    def __init__(self, connects: Mapping[ServerId, Connect], timeout: ClientTimeout) -> None:
        self._connects = dict(connects)
        self._timeout = timeout
        self._state = _State()

    def __repr__(self) -> str:
        return (
            f"Client(leader={self._state.leader!r}, term={self._state.term}, "
            f"timeout={self._timeout!r})"
        )

    @classmethod
    async def create(
        cls,
        addrs: Mapping[ServerId, str],
        timeout: ClientTimeout | None,
        channel_factory: ChannelFactory,
    ) -> Client:
        """Connect to the servers at ``addrs`` and return a client."""
        connects = await connect(addrs, channel_factory, None)
        return cls(connects, timeout if timeout is not None else ClientTimeout())

    def _connect_to(self, server_id: ServerId) -> Connect:
        try:
            return self._connects[server_id]
        except KeyError:
            raise ProtocolError(f"leader {server_id} not found") from None

    def _observe_fast_response(self, resp: ProposeResponse) -> bool:
        """Update the state from a fast-round response; True if the term advanced."""
        state = self._state
        if state.term < resp.term:
            # Only move to a newer term when the response names a leader, so an
            # election that cannot succeed does not hide the real leader.
            if resp.leader_id is not None:
                state.update_to_term(resp.term)
                state.set_leader(resp.leader_id)
                return True
        elif state.term == resp.term and resp.leader_id is not None:
            if state.leader is None:
                state.set_leader(resp.leader_id)
            if state.leader != resp.leader_id:
                raise ProtocolError("there should never be two leader in one term")
        return False

    async def _fast_round(self, cmd: Command) -> tuple[Any, bool]:
        """Broadcast the proposal to every server.

        Returns the execution result (or None) and whether the fast round succeeded.
        """
        max_fault = len(self._connects) // 2
        major_cnt = max_fault + (max_fault + 1) // 2 + 1
        request = ProposeRequest.from_command(cmd)
        tasks = [
            asyncio.ensure_future(conn.propose(request, self._timeout.propose_timeout))
            for conn in self._connects.values()
        ]
        ok_cnt = 0
        execute_result: Any = None
        has_result = False
        try:
            for next_done in asyncio.as_completed(tasks):
                try:
                    resp = await next_done
                except ProposeError as exc:
                    logger.warning("Propose error: %s", exc)
                    continue
                if self._observe_fast_response(resp):
                    execute_result, has_result = None, False
                if resp.error is not None:
                    err = decode(resp.error)
                    if isinstance(err, ExecutionError):
                        raise err
                    logger.warning("Propose error: %s", err)
                else:
                    if resp.result is not None:
                        if has_result:
                            raise ProtocolError("should not set exe result twice")
                        execute_result, has_result = decode(resp.result), True
                    ok_cnt += 1
                if ok_cnt >= major_cnt and has_result:
                    logger.debug("fast round succeeds")
                    return execute_result, True
        finally:
            await _cancel_all(tasks)
        return execute_result, False

    async def _wait_for_leader(self) -> ServerId:
        state = self._state
        while True:
            state.leader_event.clear()
            if state.leader is not None:
                return state.leader
            try:
                await asyncio.wait_for(state.leader_event.wait(), self._timeout.retry_timeout)
            except asyncio.TimeoutError:
                # the fast round may have failed to learn the leader
                return await self._fetch_leader()

    async def _slow_round(self, cmd: Command) -> tuple[Any, Any]:
        """Wait for the leader to sync the command; return (asr, er)."""
        retry = self._timeout.retry_timeout
        while True:
            leader_id = await self._wait_for_leader()
            logger.debug("wait synced request sent to %s", leader_id)
            conn = self._connect_to(leader_id)
            request = WaitSyncedRequest.from_id(cmd.id())
            try:
                resp = await conn.wait_synced(request, self._timeout.wait_synced_timeout)
            except ProposeError as exc:
                logger.warning("wait synced rpc error: %s", exc)
                # the leader has quite likely crashed; look for the new one
                await asyncio.sleep(retry)
                await self._resend_propose(cmd, None)
                continue

            outcome = resp.into_result()
            if isinstance(outcome, SyncSuccess):
                logger.debug("slow round for cmd(%s) succeeded", cmd.id())
                return outcome.asr, outcome.er
            if isinstance(outcome, Redirect):
                new_leader = None
                state = self._state
                if outcome.leader_id is not None and state.term <= outcome.term:
                    state.leader = outcome.leader_id
                    state.term = outcome.term
                    new_leader = outcome.leader_id
                await self._resend_propose(cmd, new_leader)
                continue
            if isinstance(outcome, SyncTimeout):
                raise SyncedError("wait sync timeout")
            raise SyncedError(repr(outcome))

    async def _resend_propose(self, cmd: Command, new_leader: ServerId | None) -> None:
        """Resend the proposal to the leader only, until the leader accepts it."""
        retry = self._timeout.retry_timeout
        while True:
            await asyncio.sleep(retry)
            if new_leader is not None:
                leader_id, new_leader = new_leader, None
            else:
                leader_id = await self._fetch_leader()
            logger.debug("resend propose to %s", leader_id)
            conn = self._connect_to(leader_id)
            request = ProposeRequest.from_command(cmd)
            try:
                resp = await conn.propose(request, self._timeout.propose_timeout)
            except DuplicatedError:
                return
            except ProposeError as exc:
                logger.warning("failed to resend propose, %s", exc)
                await asyncio.sleep(retry)
                continue

            state = self._state
            if state.term < resp.term:
                if resp.leader_id is not None:
                    state.update_to_term(resp.term)
                    done = resp.leader_id == leader_id
                    state.set_leader(leader_id)
                    if done:
                        return
            elif state.term == resp.term and resp.leader_id is not None:
                done = resp.leader_id == leader_id
                if state.leader is None:
                    state.set_leader(resp.leader_id)
                if done:
                    return

    async def _fetch_leader(self) -> ServerId:
        """Ask every server for the leader until one is known; it may be outdated."""
        retry = self._timeout.retry_timeout

        async def ask(conn: Connect) -> tuple[ServerId, FetchLeaderResponse | ProposeError]:
            try:
                return conn.id, await conn.fetch_leader(FetchLeaderRequest(), retry)
            except ProposeError as exc:
                return conn.id, exc

        majority_cnt = len(self._connects) // 2 + 1
        while True:
            tasks = [asyncio.ensure_future(ask(conn)) for conn in self._connects.values()]
            max_term = 0
            leader: ServerId | None = None
            ok_cnt = 0
            try:
                for next_done in asyncio.as_completed(tasks):
                    server_id, resp = await next_done
                    if isinstance(resp, ProposeError):
                        logger.warning("fetch leader from %s failed, %r", server_id, resp)
                        continue
                    if resp.leader_id is not None:
                        if max_term < resp.term:
                            max_term = resp.term
                            leader = resp.leader_id
                            ok_cnt = 1
                        elif max_term == resp.term:
                            leader = resp.leader_id
                            ok_cnt += 1
                    if ok_cnt >= majority_cnt:
                        break
            finally:
                await _cancel_all(tasks)

            if leader is not None:
                logger.debug("Fetch leader succeeded, leader set to %s", leader)
                self._state.term = max_term
                self._state.set_leader(leader)
                return leader

            # wait until the election is completed
            await asyncio.sleep(retry)

    async def propose(self, cmd: Command) -> Any:
        """Propose ``cmd`` and return its execution result.

        Raises ``ExecutionError`` if execution fails and ``SyncedError`` if
        syncing to the followers fails.
        """
        fast = asyncio.ensure_future(self._fast_round(cmd))
        slow = asyncio.ensure_future(self._slow_round(cmd))
        try:
            done, _ = await asyncio.wait({fast, slow}, return_when=asyncio.FIRST_COMPLETED)
            if fast in done:
                fast_er, success = fast.result()
                if success:
                    return fast_er
                _asr, er = await slow
                return er
            try:
                _asr, er = slow.result()
            except ProposeError:
                try:
                    fast_er, success = await fast
                except ProposeError:
                    success = False
                if success:
                    return fast_er
                raise
            return er
        finally:
            await _cancel_all(task for task in (fast, slow) if not task.done())

    async def propose_indexed(self, cmd: Command) -> tuple[Any, Any]:
        """Propose ``cmd`` and wait until it is synced; return (er, asr)."""
        _fast_result, slow_result = await asyncio.gather(
            self._fast_round(cmd), self._slow_round(cmd), return_exceptions=True
        )
        if isinstance(slow_result, BaseException):
            raise slow_result
        asr, er = slow_result
        return er, asr

    def leader(self) -> ServerId | None:
        """The current leader, if known."""
        return self._state.leader

    def leader_rx(self) -> LeaderReceiver:
        """A receiver of leader changes from now on."""
        return self._state.subscribe()