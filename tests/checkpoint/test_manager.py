"""Tests for tidemark.checkpoint.manager.CheckpointManager

Tests cover:
- create_checkpoint: IDs, deep copies, parent chaining, explicit parents
- Session tracking rebuilt from storage after a restart
- should_checkpoint cadence
- get_checkpoint_history / replay_from_checkpoint
- delete_checkpoint / delete_session / prune_old_checkpoints
- get_session_stats / get_checkpoint_tree / compare_checkpoints
- set_parent_checkpoint / get_parent_checkpoint
"""

import pytest

from tidemark.message import Message
from tidemark.checkpoint.errors import (
    CheckpointConfigError,
    CheckpointStorageError,
    InvalidParentError,
    ReplayError,
)
from tidemark.checkpoint.manager import CheckpointManager
from tidemark.checkpoint.storage import MemoryStorage


class FlakyDeleteStorage(MemoryStorage):
    """MemoryStorage whose delete fails for chosen IDs"""

    def __init__(self, failing_ids):
        super().__init__()
        self.failing_ids = set(failing_ids)

    async def delete(self, checkpoint_id):
        if checkpoint_id in self.failing_ids:
            raise CheckpointStorageError(f"disk on fire: {checkpoint_id}")
        return await super().delete(checkpoint_id)


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def manager(storage):
    return CheckpointManager(storage=storage)


async def _create(manager, session_id="session_1", step=1, state=None, **kwargs):
    return await manager.create_checkpoint(
        session_id=session_id,
        agent_name="test_agent",
        step_number=step,
        state=state if state is not None else {"counter": step},
        messages=[Message(role="user", content=f"step {step}")],
        **kwargs,
    )


class TestManagerInit:
    def test_defaults_to_memory_storage(self):
        assert isinstance(CheckpointManager().storage, MemoryStorage)

    def test_negative_interval_rejected(self):
        with pytest.raises(CheckpointConfigError):
            CheckpointManager(auto_checkpoint_interval=-1)

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            CheckpointManager(auto_checkpoint_interval=-5)


class TestCreateCheckpoint:
    async def test_returns_checkpoint_id(self, manager):
        cp_id = await _create(manager)
        assert cp_id.startswith("ckpt_")

    async def test_saves_fields(self, manager, storage):
        cp_id = await _create(manager, step=3, metadata={"cost": 0.1})
        cp = await storage.load(cp_id)
        assert cp.session_id == "session_1"
        assert cp.agent_name == "test_agent"
        assert cp.step_number == 3
        assert cp.state == {"counter": 3}
        assert cp.messages == [Message(role="user", content="step 3")]
        assert cp.metadata == {"cost": 0.1}

    async def test_deep_copies_payloads(self, manager, storage):
        state = {"items": [1]}
        messages = [Message(role="user", content="hi")]
        metadata = {"tags": ["a"]}
        cp_id = await manager.create_checkpoint("session_1", "test_agent", 1, state, messages, metadata)

        state["items"].append(2)
        messages.append(Message(role="user", content="later"))
        metadata["tags"].append("b")

        cp = await storage.load(cp_id)
        assert cp.state == {"items": [1]}
        assert len(cp.messages) == 1
        assert cp.metadata == {"tags": ["a"]}

    async def test_unique_ids(self, manager):
        ids = {await _create(manager, step=i) for i in range(20)}
        assert len(ids) == 20


class TestParentChaining:
    async def test_first_checkpoint_has_no_parent(self, manager, storage):
        cp = await storage.load(await _create(manager))
        assert cp.parent_checkpoint_id is None

    async def test_second_checkpoint_chains_to_first(self, manager, storage):
        cp1_id = await _create(manager, step=1)
        cp2_id = await _create(manager, step=2)
        assert (await storage.load(cp2_id)).parent_checkpoint_id == cp1_id

    async def test_sessions_chain_independently(self, manager, storage):
        a1 = await _create(manager, session_id="a")
        await _create(manager, session_id="b")
        a2 = await _create(manager, session_id="a", step=2)
        assert (await storage.load(a2)).parent_checkpoint_id == a1

    async def test_explicit_parent_creates_branch(self, manager, storage):
        c1 = await _create(manager, step=1)
        await _create(manager, step=2)
        branch = await _create(manager, step=2, parent_checkpoint_id=c1)
        assert (await storage.load(branch)).parent_checkpoint_id == c1

    async def test_missing_explicit_parent_rejected(self, manager):
        with pytest.raises(InvalidParentError):
            await _create(manager, parent_checkpoint_id="ckpt_missing")

    async def test_parent_from_other_session_rejected(self, manager):
        foreign = await _create(manager, session_id="other")
        with pytest.raises(InvalidParentError):
            await _create(manager, session_id="session_1", parent_checkpoint_id=foreign)

    async def test_tracking_rebuilt_after_restart(self, storage):
        first = CheckpointManager(storage=storage)
        await _create(first, step=1)
        last = await _create(first, step=2)

        restarted = CheckpointManager(storage=storage)
        cp_id = await _create(restarted, step=3)
        assert (await storage.load(cp_id)).parent_checkpoint_id == last

    async def test_set_and_get_parent_checkpoint(self, manager, storage):
        c1 = await _create(manager, step=1)
        await _create(manager, step=2)

        await manager.set_parent_checkpoint(await storage.load(c1))
        assert manager.get_parent_checkpoint("session_1") == c1

        c3 = await _create(manager, step=2)
        assert (await storage.load(c3)).parent_checkpoint_id == c1

    def test_get_parent_checkpoint_unknown_session(self, manager):
        assert manager.get_parent_checkpoint("nobody") is None


class TestShouldCheckpoint:
    async def test_interval_cadence(self, storage):
        manager = CheckpointManager(storage=storage, auto_checkpoint_interval=5)
        assert [manager.should_checkpoint("s", step) for step in range(1, 6)] == [
            False, False, False, False, True,
        ]

        await _create(manager, session_id="s", step=5)
        assert [manager.should_checkpoint("s", step) for step in range(6, 11)] == [
            False, False, False, False, True,
        ]

    def test_zero_interval_is_manual_only(self, manager):
        assert manager.should_checkpoint("s", 1000) is False

    async def test_get_latest_seeds_cadence(self, storage):
        first = CheckpointManager(storage=storage, auto_checkpoint_interval=5)
        await _create(first, session_id="s", step=7)

        restarted = CheckpointManager(storage=storage, auto_checkpoint_interval=5)
        latest = await restarted.get_latest("s")
        assert latest.step_number == 7
        assert restarted.should_checkpoint("s", 8) is False
        assert restarted.should_checkpoint("s", 12) is True


class TestStateAndHistory:
    async def test_restore_state_is_a_copy(self, manager):
        cp = await manager.load_checkpoint(await _create(manager, state={"nested": {"v": 1}}))
        restored = manager.restore_state(cp)
        restored["nested"]["v"] = 2
        assert cp.state == {"nested": {"v": 1}}

    async def test_history_order(self, manager):
        c1 = await _create(manager, step=1)
        c2 = await _create(manager, step=2)
        c3 = await _create(manager, step=3)
        history = await manager.get_checkpoint_history(c3, 10)
        assert [c.checkpoint_id for c in history] == [c3, c2, c1]

    async def test_list_checkpoints_limit(self, manager):
        for step in range(1, 6):
            await _create(manager, step=step)
        result = await manager.list_checkpoints("session_1", 2)
        assert [c.step_number for c in result] == [5, 4]


class TestReplay:
    async def test_replays_oldest_first(self, manager):
        for step in range(1, 4):
            last = await _create(manager, step=step)

        results = await manager.replay_from_checkpoint(
            last, lambda checkpoint, state: (checkpoint.step_number, state["counter"])
        )
        assert results == [(1, 1), (2, 2), (3, 3)]

    async def test_up_to_step_skips_later_checkpoints(self, manager):
        for step in range(1, 6):
            last = await _create(manager, step=step)

        seen = await manager.replay_from_checkpoint(last, lambda cp, state: cp.step_number, up_to_step=3)
        assert seen == [1, 2, 3]

    async def test_async_callback(self, manager):
        for step in range(1, 3):
            last = await _create(manager, step=step)

        async def replay_fn(checkpoint, state):
            return state["counter"] * 10

        assert await manager.replay_from_checkpoint(last, replay_fn) == [10, 20]

    async def test_callback_gets_state_copy(self, manager):
        last = await _create(manager, state={"v": 1})

        def replay_fn(checkpoint, state):
            state["v"] = 99

        await manager.replay_from_checkpoint(last, replay_fn)
        assert (await manager.load_checkpoint(last)).state == {"v": 1}

    async def test_failure_aborts_with_step_number(self, manager):
        ids = [await _create(manager, step=step) for step in range(1, 5)]
        calls = []

        def replay_fn(checkpoint, state):
            calls.append(checkpoint.step_number)
            if checkpoint.step_number == 2:
                raise RuntimeError("boom")
            return checkpoint.step_number

        with pytest.raises(ReplayError) as exc_info:
            await manager.replay_from_checkpoint(ids[-1], replay_fn)

        assert exc_info.value.step_number == 2
        assert exc_info.value.checkpoint_id == ids[1]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert calls == [1, 2]

    async def test_replay_depth_is_configurable(self, storage):
        manager = CheckpointManager(storage=storage, replay_max_depth=2)
        for step in range(1, 5):
            last = await _create(manager, step=step)
        assert await manager.replay_from_checkpoint(last, lambda cp, s: cp.step_number) == [3, 4]


class TestDeletion:
    async def test_delete_checkpoint(self, manager):
        cp_id = await _create(manager)
        assert await manager.delete_checkpoint(cp_id) is True
        assert await manager.load_checkpoint(cp_id) is None
        assert await manager.delete_checkpoint(cp_id) is False

    async def test_delete_tracked_checkpoint_clears_tracking(self, manager, storage):
        c1 = await _create(manager, step=1)
        c2 = await _create(manager, step=2)
        await manager.delete_checkpoint(c2)

        c3 = await _create(manager, step=3)
        assert (await storage.load(c3)).parent_checkpoint_id == c1

    async def test_delete_session(self, manager):
        for step in range(1, 5):
            await _create(manager, session_id="s1", step=step)
        assert await manager.delete_session("s1") == 4
        assert await manager.list_checkpoints("s1", 0) == []
        assert manager.get_parent_checkpoint("s1") is None


class TestPrune:
    async def test_keeps_most_recent(self, manager):
        ids = [await _create(manager, step=step) for step in range(1, 11)]

        deleted = await manager.prune_old_checkpoints("session_1", keep_last=3)

        assert deleted == 7
        remaining = await manager.list_checkpoints("session_1")
        assert [c.checkpoint_id for c in remaining] == ids[:-4:-1]

    async def test_nothing_to_prune(self, manager):
        for step in range(1, 3):
            await _create(manager, step=step)
        assert await manager.prune_old_checkpoints("session_1", keep_last=5) == 0

    async def test_keep_zero_deletes_all(self, manager):
        for step in range(1, 4):
            await _create(manager, step=step)
        assert await manager.prune_old_checkpoints("session_1", keep_last=0) == 3
        assert await manager.list_checkpoints("session_1") == []

    async def test_negative_keep_last(self, manager):
        with pytest.raises(ValueError):
            await manager.prune_old_checkpoints("session_1", keep_last=-1)

    async def test_skips_failed_deletes(self):
        storage = FlakyDeleteStorage(failing_ids=[])
        manager = CheckpointManager(storage=storage)
        ids = [await _create(manager, step=step) for step in range(1, 6)]
        storage.failing_ids = {ids[0]}

        deleted = await manager.prune_old_checkpoints("session_1", keep_last=2)

        assert deleted == 2
        remaining = {c.checkpoint_id for c in await manager.list_checkpoints("session_1")}
        assert remaining == {ids[0], ids[3], ids[4]}


class TestStatsTreeAndDiff:
    async def test_session_stats(self, manager):
        c1 = await _create(manager, step=2)
        await _create(manager, step=4)
        c3 = await _create(manager, step=9)

        stats = await manager.get_session_stats("session_1")
        assert stats.total_checkpoints == 3
        assert stats.first_checkpoint == c1
        assert stats.latest_checkpoint == c3
        assert stats.steps_covered == 7
        assert stats.time_span >= 0

    async def test_session_stats_empty(self, manager):
        stats = await manager.get_session_stats("nobody")
        assert stats.total_checkpoints == 0
        assert stats.latest_checkpoint is None

    async def test_checkpoint_tree_shows_branches(self, manager):
        c1 = await _create(manager, step=1)
        c2 = await _create(manager, step=2)
        branch = await _create(manager, step=2, parent_checkpoint_id=c1)

        tree = await manager.get_checkpoint_tree("session_1")
        assert tree.root_id == c1
        assert set(tree.get_branches(c1)) == {c2, branch}
        assert set(tree.get_leaf_nodes()) == {c2, branch}

    async def test_checkpoint_tree_empty(self, manager):
        assert await manager.get_checkpoint_tree("nobody") is None

    async def test_compare_checkpoints(self, manager):
        c1 = await _create(manager, step=1, state={"a": 1})
        c2 = await _create(manager, step=3, state={"a": 2, "b": 1})
        diff = await manager.compare_checkpoints(c1, c2)
        assert diff.steps_advanced == 2
        assert diff.state_added == {"b": 1}
        assert diff.state_modified == {"a": {"old": 1, "new": 2}}

    async def test_compare_missing(self, manager):
        c1 = await _create(manager)
        assert await manager.compare_checkpoints(c1, "ckpt_missing") is None
