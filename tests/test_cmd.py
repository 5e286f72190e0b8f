from dataclasses import dataclass, field

import pytest

from curp.cmd import Command, CommandExecutor, ProposeId, is_conflict


@dataclass
class _TestCommand(Command):
    propose_id: ProposeId
    key_list: list = field(default_factory=list)
    value: int | None = None

    def keys(self):
        return self.key_list

    def id(self):
        return self.propose_id


class _Failure(Exception):
    pass


class _TestExecutor(CommandExecutor):
    def __init__(self):
        self.store = {}
        self.applied = 0

    async def execute(self, cmd):
        if cmd.value is None:
            return [self.store[k] for k in cmd.keys() if k in self.store]
        previous = [self.store[k] for k in cmd.keys() if k in self.store]
        for k in cmd.keys():
            self.store[k] = cmd.value
        return previous

    async def after_sync(self, cmd, index):
        self.applied = index
        return index

    async def reset(self):
        self.store.clear()

    def last_applied(self):
        return self.applied


class _RangeKey:
    def __init__(self, low, high):
        self.low, self.high = low, high

    def is_conflict(self, other):
        return self.low < other.high and other.low < self.high


def test_propose_id_display_is_quoted():
    assert str(ProposeId("abc")) == '"abc"'


def test_propose_id_equality_and_hash():
    assert ProposeId("1") == ProposeId("1")
    assert ProposeId("1") != ProposeId("2")
    assert len({ProposeId("1"), ProposeId("1")}) == 1


def test_plain_keys_conflict_when_equal():
    assert is_conflict("a", "a")
    assert not is_conflict("a", "b")
    assert is_conflict(3, 3)
    assert not is_conflict(3, 4)


def test_keys_with_own_check_decide():
    assert is_conflict(_RangeKey(0, 5), _RangeKey(4, 9))
    assert not is_conflict(_RangeKey(0, 5), _RangeKey(5, 9))


def test_command_conflict_over_all_key_pairs():
    a = _TestCommand(ProposeId("1"), [0, 1])
    b = _TestCommand(ProposeId("2"), [1])
    c = _TestCommand(ProposeId("3"), [2])
    assert a.is_conflict(b)
    assert b.is_conflict(a)
    assert not a.is_conflict(c)
    assert not a.is_conflict(_TestCommand(ProposeId("4"), []))


def test_abstract_classes_cannot_be_instantiated():
    with pytest.raises(TypeError):
        Command()
    with pytest.raises(TypeError):
        CommandExecutor()


@pytest.mark.asyncio
async def test_execute_dispatches_to_executor():
    executor = _TestExecutor()
    put = _TestCommand(ProposeId("1"), [0], value=0)
    get = _TestCommand(ProposeId("2"), [0])
    assert await put.execute(executor) == []
    assert await get.execute(executor) == [0]


@pytest.mark.asyncio
async def test_after_sync_dispatches_to_executor():
    executor = _TestExecutor()
    cmd = _TestCommand(ProposeId("1"), [0])
    assert await cmd.after_sync(executor, 1) == 1
    assert executor.last_applied() == 1


@pytest.mark.asyncio
async def test_reset_clears_executor_state():
    executor = _TestExecutor()
    await _TestCommand(ProposeId("1"), [0], value=7).execute(executor)
    await executor.reset()
    assert await _TestCommand(ProposeId("2"), [0]).execute(executor) == []