"""Put benchmark against a key-value cluster."""

from __future__ import annotations

import asyncio
import itertools
import logging
import os
import random
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

ClientFactory = Callable[[dict[str, str], bool], Awaitable[Any]]
"""Creates a client from the endpoints and the use-curp flag; the client has ``async put(key, value)``."""

_HISTOGRAM_SIZE = 10
_BAR_WIDTH = 40


@dataclass(frozen=True)
class PutCommand:
    """Arguments of the put benchmark."""

    key_size: int = 8
    val_size: int = 8
    total: int = 10000
    key_space_size: int = 1
    sequential_keys: bool = False


@dataclass
class BenchmarkArgs:
    """Arguments of a benchmark run."""

    endpoints: dict[str, str]
    clients: int
    command: PutCommand
    use_curp: bool = False
    stdout: bool = False


@dataclass(frozen=True)
class CmdResult:
    """Outcome of one request."""

    elapsed: float
    error: str | None = None


@dataclass
class Stats:
    """Latency statistics of a run, times in seconds."""

    latencies: list[float] = field(default_factory=list)
    total: float = 0.0
    slowest: float = 0.0
    fastest: float = 0.0
    avg: float = 0.0
    qps: float = 0.0

    def summary(self) -> str:
        """A short text summary of the run."""
        return (
            "\nSummary:\n"
            f"  Total:        {self.total:.4f} secs\n"
            f"  Slowest:      {self.slowest:.4f} secs\n"
            f"  Fastest:      {self.fastest:.4f} secs\n"
            f"  Average:      {self.avg:.4f} secs\n"
            f"  Requests/sec: {self.qps:.2f}\n"
        )

    def histogram(self) -> str:
        """A text histogram of the latencies, which are expected in ascending order."""
        if not self.latencies:
            raise ValueError("no latencies to build a histogram from")
        gap = (self.slowest - self.fastest) / (_HISTOGRAM_SIZE - 1)
        buckets = [self.fastest + gap * i for i in range(_HISTOGRAM_SIZE - 1)]
        buckets.append(self.slowest)
        counts = [0] * _HISTOGRAM_SIZE
        idx = 0
        for latency in self.latencies:
            while latency > buckets[idx]:
                idx += 1
            counts[idx] += 1
        most = max(counts)
        lines = ["\nResponse time histogram:\n"]
        for bucket, count in zip(buckets, counts):
            bar = "∎" * (count * _BAR_WIDTH // most)
            lines.append(f"  {bucket:.4f}\t[{count}]\t| {bar}\n")
        return "".join(lines)


def fill_usize_to_buf(buf: bytearray, value: int) -> bytearray:
    """Write ``value`` little-endian into ``buf``, truncating to its length; return ``buf``."""
    size = len(buf)
    buf[:] = (value & ((1 << (8 * size)) - 1)).to_bytes(size, "little")
    return buf


class CommandRunner:
    """Runs a benchmark and gathers its statistics."""

    def __init__(self, args: BenchmarkArgs, client_factory: ClientFactory) -> None:
        self.args = args
        self.errors: Counter[str] = Counter()
        self._client_factory = client_factory

    async def run(self) -> Stats:
        """Run the benchmark named by the arguments and return its statistics."""
        clients = [
            await self._client_factory(dict(self.args.endpoints), self.args.use_curp)
            for _ in range(self.args.clients)
        ]
        return await self._put_bench(clients, self.args.command)

    async def _put_bench(self, clients: list[Any], cmd: PutCommand) -> Stats:
        counter = itertools.count()
        start_gate = asyncio.Event()
        queue: asyncio.Queue[CmdResult | None] = asyncio.Queue(maxsize=max(len(clients), 1))
        value = os.urandom(cmd.val_size)

        async def worker(client: Any) -> None:
            key = bytearray(cmd.key_size)
            try:
                await start_gate.wait()
                while (idx := next(counter)) < cmd.total:
                    seed = idx if cmd.sequential_keys else random.getrandbits(64)
                    fill_usize_to_buf(key, seed % cmd.key_space_size)
                    start = time.perf_counter()
                    error = None
                    try:
                        await client.put(bytes(key), value)
                    except Exception as exc:  # every failure is counted, not raised
                        error = repr(exc)
                    await queue.put(CmdResult(time.perf_counter() - start, error))
            finally:
                await queue.put(None)

        tasks = [asyncio.create_task(worker(client)) for client in clients]
        try:
            stats = await self._collect(queue, start_gate, len(tasks), cmd.total)
        finally:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return stats

    async def _collect(
        self,
        queue: asyncio.Queue[CmdResult | None],
        start_gate: asyncio.Event,
        workers: int,
        total: int,
    ) -> Stats:
        progress = 0

        async def report() -> None:
            while True:
                await asyncio.sleep(1)
                logger.debug("progress: %d/%d", progress, total)

        reporter = asyncio.create_task(report())
        stats = Stats()
        try:
            start_gate.set()
            logger.debug("Collecting benchmark results...")
            start = time.perf_counter()
            remaining = workers
            while remaining:
                result = await queue.get()
                if result is None:
                    remaining -= 1
                    continue
                if result.error is not None:
                    self.errors[result.error] += 1
                    continue
                progress += 1
                stats.latencies.append(result.elapsed)
        finally:
            reporter.cancel()

        if not stats.latencies:
            most_common = self.errors.most_common(1)
            worst = most_common[0][0] if most_common else None
            raise RuntimeError(f"All requests failed! {worst}")
        stats.total = time.perf_counter() - start
        count = len(stats.latencies)
        stats.qps = count / stats.total if stats.total > 0 else float("inf")
        stats.avg = sum(stats.latencies) / count
        stats.latencies.sort()
        stats.fastest = stats.latencies[0]
        stats.slowest = stats.latencies[-1]
        return stats