"""Tests for the in-memory TaskStore contract."""

import pytest

from taskhive.core.store import InMemoryStore
from taskhive.exceptions import InvalidStateTransition, TaskNotFound
from taskhive.models.agent import AgentActivity, AgentKind
from taskhive.models.human_interaction import HumanInteraction, InteractionStatus
from taskhive.models.task import Task, TaskState


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


class TestTaskWrites:

    async def test_transition_is_compare_and_set(self, store):
        task = await store.create_task(Task(title="t"))

        moved = await store.transition(task.id, TaskState.PENDING, TaskState.ACTIVE)
        assert moved.state == TaskState.ACTIVE

        with pytest.raises(InvalidStateTransition):
            await store.transition(task.id, TaskState.PENDING, TaskState.ACTIVE)

    async def test_update_task_rejects_state(self, store):
        task = await store.create_task(Task(title="t"))
        with pytest.raises(ValueError):
            await store.update_task(task.id, state=TaskState.COMPLETED)

    async def test_missing_task_raises(self, store):
        with pytest.raises(TaskNotFound):
            await store.require_task("nope")

    async def test_compare_and_set_metadata_claims_once(self, store):
        task = await store.create_task(Task(title="t"))

        assert await store.compare_and_set_metadata(task.id, "claim", None, "first") is True
        assert await store.compare_and_set_metadata(task.id, "claim", None, "second") is False
        assert (await store.get_task(task.id)).metadata["claim"] == "first"

    async def test_reads_are_detached_copies(self, store):
        task = await store.create_task(Task(title="t", metadata={"k": "v"}))
        copy = await store.get_task(task.id)
        copy.metadata["k"] = "changed"

        assert (await store.get_task(task.id)).metadata["k"] == "v"


class TestQueries:

    async def test_children_in_creation_order(self, store):
        parent = await store.create_task(Task(title="parent"))
        first = await store.create_task(Task(title="a", parent_id=parent.id))
        second = await store.create_task(Task(title="b", parent_id=parent.id))

        assert [c.id for c in await store.children_of(parent.id)] == [first.id, second.id]

    async def test_descendants_and_root(self, store):
        root = await store.create_task(Task(title="root"))
        child = await store.create_task(Task(title="child", parent_id=root.id))
        grandchild = await store.create_task(Task(title="grandchild", parent_id=child.id))
        await store.create_task(Task(title="sibling", parent_id=root.id))

        assert await store.count_descendants(root.id) == 3
        assert (await store.root_of(grandchild.id)).id == root.id

    async def test_tasks_with_unmet_dependencies(self, store):
        parent = await store.create_task(Task(title="parent"))
        dep = await store.create_task(Task(title="dep", parent_id=parent.id))
        blocked = await store.create_task(Task(title="blocked", parent_id=parent.id, depends_on_task_ids=[dep.id]))

        assert [t.id for t in await store.tasks_with_unmet_dependencies(parent.id)] == [blocked.id]

        await store.transition(dep.id, TaskState.PENDING, TaskState.ACTIVE)
        await store.transition(dep.id, TaskState.ACTIVE, TaskState.COMPLETED)
        assert await store.tasks_with_unmet_dependencies(parent.id) == []

    async def test_activity_ancestry_runs_root_first(self, store):
        root = await store.create_activity(AgentActivity(task_id="t1", agent_kind=AgentKind.COORDINATOR))
        middle = await store.create_activity(AgentActivity(task_id="t2", agent_kind=AgentKind.COORDINATOR, parent_id=root.id))
        leaf = await store.create_activity(AgentActivity(task_id="t3", agent_kind=AgentKind.WRITER, parent_id=middle.id))

        assert [a.id for a in await store.activity_ancestry(leaf.id)] == [root.id, middle.id, leaf.id]


class TestInteractions:

    async def test_update_interaction_checks_expected_status(self, store):
        interaction = await store.insert_interaction(HumanInteraction(task_id="t", question="?"))

        answered = await store.update_interaction(
            interaction.id, InteractionStatus.PENDING, status=InteractionStatus.ANSWERED, response="yes",
        )
        assert answered.status == InteractionStatus.ANSWERED

        again = await store.update_interaction(
            interaction.id, InteractionStatus.PENDING, status=InteractionStatus.ANSWERED, response="no",
        )
        assert again is None
        assert (await store.get_interaction(interaction.id)).response == "yes"
