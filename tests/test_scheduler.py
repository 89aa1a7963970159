"""Tests for eligibility, batch assignment and quota deferral."""

from datetime import timedelta

from taskhive.core.scheduler import Scheduler, select_next, sort_by_priority_and_complexity
from taskhive.core.work_queue import AGENT_QUEUE, COORDINATOR_QUEUE, WorkKind
from taskhive.models.agent import AgentKind
from taskhive.models.task import Task, TaskPriority, TaskState, utcnow


def researcher(**metadata):
    return {"suggested_agent": "ResearcherAgent", **metadata}


async def active_parent(hive, title="Parent"):
    parent = await hive.task_manager.create_task(title=title, description=f"{title} description")
    return await hive.task_manager.activate(parent.id)


async def child_of(hive, parent, title, **kwargs):
    kwargs.setdefault("metadata", researcher())
    return await hive.task_manager.create_task(
        title=title, description=f"{title} description", parent_id=parent.id, **kwargs,
    )


class TestOrdering:

    def test_select_next_prefers_priority_then_age(self):
        now = utcnow()
        old_normal = Task(title="old", priority=TaskPriority.NORMAL, created_at=now - timedelta(minutes=5))
        new_high = Task(title="new", priority=TaskPriority.HIGH, created_at=now)
        older_high = Task(title="older", priority=TaskPriority.HIGH, created_at=now - timedelta(minutes=1))

        assert select_next([old_normal, new_high, older_high]) is older_high
        assert select_next([]) is None

    def test_simple_before_moderate_on_equal_priority(self):
        now = utcnow()
        moderate = Task(title="m", metadata={"complexity": "moderate"}, created_at=now - timedelta(minutes=1))
        simple = Task(title="s", metadata={"complexity": "simple"}, created_at=now)
        low = Task(title="l", priority=TaskPriority.LOW, created_at=now - timedelta(minutes=9))

        assert sort_by_priority_and_complexity([low, moderate, simple]) == [simple, moderate, low]


class TestEligibility:

    async def test_dependency_blocked_subtask_is_not_eligible(self, hive):
        parent = await active_parent(hive)
        first = await child_of(hive, parent, "First")
        await child_of(hive, parent, "Second", depends_on_task_ids=[first.id])

        eligible = await hive.scheduler.find_eligible_subtasks(parent)

        assert [t.id for t in eligible] == [first.id]

    async def test_superseded_subtask_is_not_eligible(self, hive):
        parent = await active_parent(hive)
        child = await child_of(hive, parent, "Old", metadata=researcher(superseded_by="other"))

        assert child.id not in [t.id for t in await hive.scheduler.find_eligible_subtasks(parent)]


class TestRunCycle:

    async def test_assigns_at_most_three_per_cycle(self, hive):
        parent = await active_parent(hive)
        for i in range(5):
            await child_of(hive, parent, f"Child {i}")

        first = await hive.scheduler.run_cycle(parent)
        second = await hive.scheduler.run_cycle(parent)

        assert first.assigned_count == 3
        assert second.assigned_count == 2
        states = [c.state for c in await hive.store.children_of(parent.id)]
        assert states == [TaskState.ACTIVE] * 5
        assert await hive.dispatcher.size(AGENT_QUEUE) == 5

    async def test_higher_priority_assigned_first(self, hive):
        parent = await active_parent(hive)
        low = await child_of(hive, parent, "Low", priority=TaskPriority.LOW)
        high = await child_of(hive, parent, "High", priority=TaskPriority.HIGH)

        scheduler = Scheduler(hive.store, hive.task_manager, hive.spawner, batch_size=1)
        result = await scheduler.run_cycle(parent)

        assert result.assigned == [high.id]
        assert (await hive.store.get_task(low.id)).state == TaskState.PENDING

    async def test_paused_parent_is_skipped(self, hive):
        parent = await active_parent(hive)
        await child_of(hive, parent, "Child")
        await hive.task_manager.pause(parent.id)

        result = await hive.scheduler.run_cycle(parent)

        assert result.skipped_reason == "paused"
        assert result.assigned == []

    async def test_parent_waiting_on_human_is_skipped(self, hive):
        parent = await active_parent(hive)
        child = await child_of(hive, parent, "Child")
        await hive.humans.request_input(parent.id, "Which dataset should we use?")

        result = await hive.scheduler.run_cycle(parent)

        assert result.skipped_reason == "waiting_on_human"
        assert result.assigned == []
        assert (await hive.store.get_task(child.id)).state == TaskState.PENDING

    async def test_escalation_stops_the_batch(self, hive):
        parent = await active_parent(hive)
        await child_of(hive, parent, "Odd one", priority=TaskPriority.HIGH, metadata={"suggested_agent": "WizardAgent"})
        regular = await child_of(hive, parent, "Regular")

        result = await hive.scheduler.run_cycle(parent)

        assert len(result.escalated) == 1
        assert result.assigned == []
        assert (await hive.store.get_task(regular.id)).state == TaskState.PENDING
        assert (await hive.store.get_task(parent.id)).state == TaskState.WAITING_ON_HUMAN

    async def test_terminal_parent_is_skipped(self, hive):
        parent = await active_parent(hive)
        await hive.task_manager.fail(parent.id, "gone")

        result = await hive.scheduler.run_cycle(parent)

        assert result.skipped_reason == "failed"


class TestQuota:

    async def test_exhausted_quota_defers_and_release_requeues_parent(self, build_hive):
        hive = build_hive(agent_concurrency_limits={"ResearcherAgent": 1})
        parent = await active_parent(hive)
        first = await child_of(hive, parent, "First")
        second = await child_of(hive, parent, "Second")

        result = await hive.scheduler.run_cycle(parent)

        assert result.assigned == [first.id]
        assert result.deferred == [second.id]
        assert (await hive.store.get_task(second.id)).state == TaskState.PENDING
        assert hive.spawner.deferred_parents(AgentKind.RESEARCHER) == {parent.id}

        await hive.spawner.release(AgentKind.RESEARCHER)

        item = await hive.dispatcher.dequeue([COORDINATOR_QUEUE])
        assert item.kind == WorkKind.COORDINATE
        assert item.task_id == parent.id
        assert await hive.limiter.in_use(AgentKind.RESEARCHER) == 0

    async def test_deferred_subtask_does_not_use_batch_slot(self, build_hive):
        hive = build_hive(agent_concurrency_limits={"ResearcherAgent": 1})
        parent = await active_parent(hive)
        await child_of(hive, parent, "Research A", priority=TaskPriority.HIGH)
        await child_of(hive, parent, "Research B", priority=TaskPriority.HIGH)
        for title in ("Write A", "Write B"):
            await child_of(hive, parent, title, metadata={"suggested_agent": "WriterAgent"})

        result = await hive.scheduler.run_cycle(parent)

        assert result.assigned_count == 3
        assert len(result.deferred) == 1
