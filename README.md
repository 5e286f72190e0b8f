# curp

An asyncio client for the CURP (Consistent Unordered Replication Protocol)
consensus protocol, the messages it exchanges with servers, and a small
put benchmark that drives many clients at once.

A CURP client can commit a command in one round trip when it does not
conflict with anything in flight: it broadcasts the proposal to every server
(the *fast round*) and, at the same time, asks the leader to report when the
command is synced (the *slow round*). Whichever gives a usable answer first
wins.

The package has no dependencies beyond the standard library.

## Modules

| Module           | Contents |
|------------------|----------|
| `curp.errors`    | `ProposeError` and its subclasses `KeyConflictError`, `DuplicatedError`, `ExecutionError`, `SyncedError`, `ProposeRpcError`, `RpcStatusError`, `EncodeError`, `ProtocolError`; also `RpcError`, `ServerError`, `RpcServiceError`, `ParsingError` |
| `curp.cmd`       | `ProposeId`, the abstract `Command` and `CommandExecutor`, the `is_conflict(key, other)` helper, and the `LogIndex` / `ServerId` aliases |
| `curp.messages`  | `encode` / `decode`, `LogEntry`, the request and response messages, `SyncSuccess`, and the `SyncError` family (`Redirect`, `ExecuteError`, `AfterSyncError`, `NoSuchCmd`, `SyncTimeout`) |
| `curp.connect`   | `Connect` (one connection per server), the `ConnectApi` interface, the `TxFilter` hook and `connect()` |
| `curp.client`    | `Client`, `ClientTimeout`, `LeaderReceiver` and `LaggedError` |
| `curp.benchmark` | `BenchmarkArgs`, `PutCommand`, `CmdResult`, `Stats`, `CommandRunner` and `fill_usize_to_buf` |

## Commands

A command lists the keys it touches and carries a `ProposeId`. Two commands
conflict when any pair of their keys conflicts: keys with their own
`is_conflict` method decide for themselves, other keys conflict when equal.

```python
from curp.cmd import Command, CommandExecutor, ProposeId


class Put(Command):
    def __init__(self, propose_id, key, value):
        self._id = ProposeId(propose_id)
        self._keys = [key]
        self.value = value

    def keys(self):
        return self._keys

    def id(self):
        return self._id


class Store(CommandExecutor):
    def __init__(self):
        self.data = {}
        self.applied = 0

    async def execute(self, cmd):
        previous = self.data.get(cmd.keys()[0])
        self.data[cmd.keys()[0]] = cmd.value
        return previous

    async def after_sync(self, cmd, index):
        self.applied = index
        return index

    async def reset(self):
        self.data.clear()

    def last_applied(self):
        return self.applied
```

`Command.execute(executor)` and `Command.after_sync(executor, index)` hand the
command to the executor.

## Messages and encoding

Messages are frozen dataclasses. Commands, results, errors and log entries
travel inside them as bytes made by `encode` and read back by `decode`; both
raise `EncodeError` on failure. The encoding is `pickle`, so only decode data
from peers you trust.

`ProposeResponse.map_or_else(success, failure)` passes the decoded result
(or `None` for an empty response) to `success`, or the decoded `ProposeError`
to `failure`. `WaitSyncedResponse.into_result()` returns a `SyncSuccess`
holding `asr` and `er`, or the `SyncError` the server sent.
`WaitSyncedResponse.new_from_result(er, asr)` takes each outcome as `None`
when missing, an exception when it failed, or the value otherwise.

## Connections

`connect(addrs, channel_factory, tx_filter=None)` returns a dict of `Connect`
objects keyed by server id. Addresses without an `http://` prefix get one.
`channel_factory(addr)` is a coroutine function returning an rpc client
object with coroutine methods `propose`, `wait_synced`, `append_entries`,
`vote` and `fetch_leader`, each taking the matching request. A server that
cannot be reached yet still gets a `Connect`, which tries again on next use.

Each request is sent with a timeout in seconds. Transport failures, timeouts
and a `TxFilter` whose `filter()` returns `False` are raised as
`ProposeRpcError`; a `ProposeError` raised by the rpc client passes through
unchanged. Each `Connect` gets its own `tx_filter.clone()`.

## Proposing through the client

```python
from curp.client import Client, ClientTimeout


async def run(channel_factory):
    addrs = {"S0": "10.0.0.1:2379", "S1": "10.0.0.2:2379", "S2": "10.0.0.3:2379"}
    client = await Client.create(addrs, ClientTimeout(), channel_factory)

    er = await client.propose(Put("1", "k", "v"))
    er, asr = await client.propose_indexed(Put("2", "k", "w"))

    print("current leader:", client.leader())
```

`ClientTimeout` holds `propose_timeout` (1.0 s), `wait_synced_timeout`
(2.0 s) and `retry_timeout` (0.05 s); passing `None` to `Client.create` uses
these defaults.

`propose` returns the execution result, from the fast round if a
super-majority answered with it, otherwise from the slow round.
`propose_indexed` waits for the slow round and returns
`(execution result, after-sync result)`. Failures are `ProposeError`
subclasses: `ExecutionError` when the command fails to execute, `SyncedError`
when syncing fails or times out.

`client.leader_rx()` returns a `LeaderReceiver`; `await receiver.recv()`
yields each new leader id. The receiver keeps one pending change: if it falls
behind, the next `recv()` raises `LaggedError` (with `skipped`) once and then
returns the newest leader.

## Benchmark

```python
import asyncio

from curp.benchmark import BenchmarkArgs, CommandRunner, PutCommand


async def bench(client_factory):
    args = BenchmarkArgs(
        endpoints={"S0": "10.0.0.1:2379"},
        clients=4,
        command=PutCommand(total=1000, key_space_size=100),
    )
    runner = CommandRunner(args, client_factory)
    stats = await runner.run()
    print(stats.summary())
    print(stats.histogram())
```

`client_factory(endpoints, use_curp)` is a coroutine function returning a
client with `async put(key, value)`. `PutCommand` defaults to 8-byte keys,
8-byte values, 10000 puts, a key space of 1 and random keys
(`sequential_keys=False`). Keys are written little-endian into the key buffer
by `fill_usize_to_buf`.

Failed puts are counted in `runner.errors` by error text; if every put fails,
`run()` raises `RuntimeError` naming the most common error. `Stats` holds the
sorted latencies and the total, slowest, fastest and average times in
seconds, plus requests per second. `summary()` and `histogram()` return text;
the histogram has ten buckets and raises `ValueError` when there are no
latencies.

## What the package does not do

- There is no server: nothing here accepts proposals, elects a leader,
  keeps a log or applies commands. `CommandExecutor` and the append-entries
  and vote messages describe what a server would use, but no server is
  provided.
- There is no network transport. Every connection goes through the
  `channel_factory` you supply, and the benchmark through the
  `client_factory` you supply.
- There is no command-line program; the benchmark is run from Python.
- Nothing is stored on disk.