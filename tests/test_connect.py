import asyncio

import pytest

from curp.connect import Connect, TxFilter, connect
from curp.errors import ProposeRpcError
from curp.messages import (
    AppendEntriesRequest,
    AppendEntriesResponse,
    FetchLeaderRequest,
    FetchLeaderResponse,
    ProposeRequest,
    ProposeResponse,
    SyncTimeout,
    VoteRequest,
    VoteResponse,
    WaitSyncedRequest,
    WaitSyncedResponse,
)


class FakeRpc:
    def __init__(self, delay=0.0, error=None):
        self.delay = delay
        self.error = error
        self.calls = []

    async def propose(self, request):
        self.calls.append(("propose", request))
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return ProposeResponse.new_empty("S1", 3)

    async def wait_synced(self, request):
        self.calls.append(("wait_synced", request))
        return WaitSyncedResponse.new_error(SyncTimeout())

    async def append_entries(self, request):
        self.calls.append(("append_entries", request))
        return AppendEntriesResponse.new_accept(request.term)

    async def vote(self, request):
        self.calls.append(("vote", request))
        return VoteResponse.new_reject(request.term)

    async def fetch_leader(self, request):
        self.calls.append(("fetch_leader", request))
        return FetchLeaderResponse("S1", 7)


class Factory:
    def __init__(self, failures=0, rpc=None):
        self.failures = failures
        self.rpc = rpc if rpc is not None else FakeRpc()
        self.addrs = []

    async def __call__(self, addr):
        self.addrs.append(addr)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("refused")
        return self.rpc


class SwitchFilter(TxFilter):
    def __init__(self, switch):
        self.switch = switch

    def filter(self):
        return self.switch["on"]

    def clone(self):
        return SwitchFilter(self.switch)


@pytest.mark.asyncio
async def test_connect_adds_scheme_when_missing():
    factory = Factory()
    conns = await connect({"S1": "127.0.0.1:1", "S2": "http://127.0.0.1:2"}, factory)
    assert conns["S1"].addr == "http://127.0.0.1:1"
    assert conns["S2"].addr == "http://127.0.0.1:2"
    assert sorted(factory.addrs) == ["http://127.0.0.1:1", "http://127.0.0.1:2"]
    assert conns["S1"].id == "S1"


@pytest.mark.asyncio
async def test_requests_reach_the_rpc_client():
    rpc = FakeRpc()
    conns = await connect({"S1": "a:1"}, Factory(rpc=rpc))
    conn = conns["S1"]
    resp = await conn.propose(ProposeRequest(b"cmd"), 1.0)
    assert resp == ProposeResponse.new_empty("S1", 3)
    leader = await conn.fetch_leader(FetchLeaderRequest(), 1.0)
    assert leader == FetchLeaderResponse("S1", 7)
    ae = await conn.append_entries(AppendEntriesRequest.new_heartbeat(4, "S1", 0, 0, 0), 1.0)
    assert ae == AppendEntriesResponse.new_accept(4)
    vote = await conn.vote(VoteRequest(5, "S2", 0, 0), 1.0)
    assert vote == VoteResponse.new_reject(5)
    synced = await conn.wait_synced(WaitSyncedRequest(b"id"), 1.0)
    assert synced.into_result() == SyncTimeout()
    assert [name for name, _ in rpc.calls] == [
        "propose",
        "fetch_leader",
        "append_entries",
        "vote",
        "wait_synced",
    ]


@pytest.mark.asyncio
async def test_client_is_reused_after_connecting():
    factory = Factory()
    conns = await connect({"S1": "a:1"}, factory)
    for _ in range(3):
        await conns["S1"].propose(ProposeRequest(b"x"), 1.0)
    assert len(factory.addrs) == 1


@pytest.mark.asyncio
async def test_failed_connection_is_retried_on_use():
    factory = Factory(failures=1)
    conns = await connect({"S1": "a:1"}, factory)
    conn = conns["S1"]
    assert conn.connect_error is not None
    resp = await conn.propose(ProposeRequest(b"x"), 1.0)
    assert resp.term == 3
    assert len(factory.addrs) == 2
    assert conn.connect_error is None


@pytest.mark.asyncio
async def test_get_raises_while_server_unreachable():
    factory = Factory(failures=5)
    conns = await connect({"S1": "a:1"}, factory)
    with pytest.raises(ProposeRpcError):
        await conns["S1"].get()


@pytest.mark.asyncio
async def test_filter_blocks_requests():
    switch = {"on": False}
    rpc = FakeRpc()
    conns = await connect({"S1": "a:1"}, Factory(rpc=rpc), SwitchFilter(switch))
    with pytest.raises(ProposeRpcError) as info:
        await conns["S1"].propose(ProposeRequest(b"x"), 1.0)
    assert info.value == ProposeRpcError("unreachable")
    assert rpc.calls == []
    switch["on"] = True
    resp = await conns["S1"].propose(ProposeRequest(b"x"), 1.0)
    assert resp.leader_id == "S1"


@pytest.mark.asyncio
async def test_each_connection_gets_its_own_filter_copy():
    original = SwitchFilter({"on": True})
    conns = await connect({"S1": "a:1", "S2": "b:2"}, Factory(), original)
    filters = [conn.tx_filter for conn in conns.values()]
    assert all(f is not original for f in filters)
    assert filters[0] is not filters[1]
    assert all(f.switch is original.switch for f in filters)


@pytest.mark.asyncio
async def test_timeout_becomes_rpc_error():
    conns = await connect({"S1": "a:1"}, Factory(rpc=FakeRpc(delay=1.0)))
    with pytest.raises(ProposeRpcError):
        await conns["S1"].propose(ProposeRequest(b"x"), 0.01)


@pytest.mark.asyncio
async def test_transport_error_becomes_rpc_error():
    rpc = FakeRpc(error=ConnectionResetError("reset"))
    conn = Connect("S1", "http://a:1", Factory(rpc=rpc))
    with pytest.raises(ProposeRpcError) as info:
        await conn.propose(ProposeRequest(b"x"), 1.0)
    assert info.value.message == "reset"