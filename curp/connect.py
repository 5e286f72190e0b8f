"""Connections from one node or client to the servers of the cluster."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar

from curp.cmd import ServerId
from curp.errors import ProposeError, ProposeRpcError
from curp.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    FetchLeaderRequest,
    FetchLeaderResponse,
    ProposeRequest,
    ProposeResponse,
    VoteRequest,
    VoteResponse,
    WaitSyncedRequest,
    WaitSyncedResponse,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChannelFactory = Callable[[str], Awaitable[Any]]
"""Opens an rpc client for an address; the client has one coroutine per rpc."""

_SCHEME = "http://"


class TxFilter(ABC):
    """Consulted before every outgoing request."""

    @abstractmethod
    def filter(self) -> bool:
        """Return True if the request may be sent."""

    @abstractmethod
    def clone(self) -> TxFilter:
        """Return a copy of this filter for another connection."""


class ConnectApi(ABC):
    """The requests a connection to one server can send."""

    @property
    @abstractmethod
    def id(self) -> ServerId:
        """Id of the server at the other end."""

    @abstractmethod
    async def get(self) -> Any:
        """Return the underlying rpc client, connecting if needed."""

    @abstractmethod
    async def propose(self, request: ProposeRequest, timeout: float) -> ProposeResponse:
        """Send a propose request."""

    @abstractmethod
    async def wait_synced(self, request: WaitSyncedRequest, timeout: float) -> WaitSyncedResponse:
        """Send a wait-synced request."""

    @abstractmethod
    async def append_entries(
        self, request: AppendEntriesRequest, timeout: float
    ) -> AppendEntriesResponse:
        """Send an append-entries request."""

    @abstractmethod
    async def vote(self, request: VoteRequest, timeout: float) -> VoteResponse:
        """Send a vote request."""

    @abstractmethod
    async def fetch_leader(
        self, request: FetchLeaderRequest, timeout: float
    ) -> FetchLeaderResponse:
        """Send a fetch-leader request."""


class Connect(ConnectApi):
    """A connection to one server; a failed connection is retried on next use."""

    def __init__(
        self,
        server_id: ServerId,
        addr: str,
        channel_factory: ChannelFactory,
        tx_filter: TxFilter | None = None,
    ) -> None:
        self._id = server_id
        self._addr = addr
        self._channel_factory = channel_factory
        self._tx_filter = tx_filter
        self._client: Any = None
        self._connect_error: str | None = None
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Connect(id={self._id!r}, addr={self._addr!r})"

    @property
    def id(self) -> ServerId:
        return self._id

    @property
    def addr(self) -> str:
        """The address used to (re)connect."""
        return self._addr

    @property
    def tx_filter(self) -> TxFilter | None:
        """The filter consulted before each request, if any."""
        return self._tx_filter

    @property
    def connect_error(self) -> str | None:
        """The last connection failure, or None once connected."""
        return self._connect_error

    async def _establish(self) -> None:
        try:
            await self.get()
        except ProposeRpcError:
            pass

    async def get(self) -> Any:
        if self._client is not None:
            return self._client
        async with self._lock:
            if self._client is not None:
                return self._client
            try:
                client = await self._channel_factory(self._addr)
            except Exception as exc:  # transport failures come in many types
                self._connect_error = str(exc)
                raise ProposeRpcError(str(exc)) from exc
            self._client = client
            self._connect_error = None
            return client

    def _check_filter(self) -> None:
        if self._tx_filter is not None and not self._tx_filter.filter():
            raise ProposeRpcError("unreachable")

    async def _send(self, call: Callable[[Any], Awaitable[T]], timeout: float) -> T:
        self._check_filter()
        client = await self.get()
        try:
            return await asyncio.wait_for(call(client), timeout)
        except ProposeError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProposeRpcError("deadline exceeded") from exc
        except OSError as exc:
            raise ProposeRpcError(str(exc)) from exc

    async def propose(self, request: ProposeRequest, timeout: float) -> ProposeResponse:
        return await self._send(lambda client: client.propose(request), timeout)

    async def wait_synced(self, request: WaitSyncedRequest, timeout: float) -> WaitSyncedResponse:
        return await self._send(lambda client: client.wait_synced(request), timeout)

    async def append_entries(
        self, request: AppendEntriesRequest, timeout: float
    ) -> AppendEntriesResponse:
        return await self._send(lambda client: client.append_entries(request), timeout)

    async def vote(self, request: VoteRequest, timeout: float) -> VoteResponse:
        return await self._send(lambda client: client.vote(request), timeout)

    async def fetch_leader(
        self, request: FetchLeaderRequest, timeout: float
    ) -> FetchLeaderResponse:
        return await self._send(lambda client: client.fetch_leader(request), timeout)


async def connect(
    addrs: Mapping[ServerId, str],
    channel_factory: ChannelFactory,
    tx_filter: TxFilter | None = None,
) -> dict[ServerId, Connect]:
    """Open a connection to every server in ``addrs``.

    A server that cannot be reached yet still gets a ``Connect``; it will
    try again when it is next used.
    """
    connects = {}
    for server_id, addr in addrs.items():
        if not addr.startswith(_SCHEME):
            addr = _SCHEME + addr
        connects[server_id] = Connect(
            server_id,
            addr,
            channel_factory,
            tx_filter.clone() if tx_filter is not None else None,
        )
    await asyncio.gather(*(conn._establish() for conn in connects.values()))
    for conn in connects.values():
        logger.debug("successfully establish connection with %s", conn.addr)
    return connects