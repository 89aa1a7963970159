"""Tests for CoordinatorAgent decomposition, progress evaluation and human responses."""

from taskhive.core.work_queue import COORDINATOR_QUEUE, WorkItem, WorkKind
from taskhive.exceptions import OracleInvocationFailure
from taskhive.models.agent import AgentKind
from taskhive.models.event import Event
from taskhive.models.human_interaction import InteractionPurpose
from taskhive.models.task import TaskState

from conftest import REPORT_DECOMPOSITION


async def root_task(hive, title="Quarterly report"):
    return await hive.task_manager.create_task(title=title, description="Write the quarterly sales report")


class TestDecompose:

    async def test_materializes_subtasks_with_dependencies(self, build_hive):
        hive = build_hive({"decomposition": REPORT_DECOMPOSITION})
        task = await root_task(hive)

        subtasks = await hive.coordinator.decompose(task.id)

        assert [s.title for s in subtasks] == ["Gather sources", "Analyze figures", "Write the report"]
        gather, analyze, write = subtasks
        assert write.depends_on_task_ids == [gather.id, analyze.id]
        assert [s.metadata["original_index"] for s in subtasks] == [1, 2, 3]
        assert gather.suggested_agent == "ResearcherAgent"

        states = {c.title: c.state for c in await hive.store.children_of(task.id)}
        assert states == {
            "Gather sources": TaskState.ACTIVE,
            "Analyze figures": TaskState.ACTIVE,
            "Write the report": TaskState.PENDING,
        }
        decomposed = await hive.store.list_events(event_type="task.decomposed")
        assert decomposed[0].data == {"task_id": task.id, "subtask_count": 3, "truncated": False}

    async def test_forward_dependency_is_dropped(self, build_hive):
        text = REPORT_DECOMPOSITION.replace("Dependencies: None\nComplexity: simple\n---\nSubtask 2", "Dependencies: 3\nComplexity: simple\n---\nSubtask 2", 1)
        hive = build_hive({"decomposition": text})
        task = await root_task(hive)

        gather, _, _ = await hive.coordinator.decompose(task.id)

        assert gather.depends_on_task_ids == []

    async def test_unparseable_output_asks_a_human(self, build_hive):
        hive = build_hive({"decomposition": "I'm not sure how to split this."})
        task = await root_task(hive)

        assert await hive.coordinator.decompose(task.id) == []

        pending = await hive.humans.pending_for(task.id)
        assert len(pending) == 1
        assert pending[0].purpose == InteractionPurpose.DECOMPOSITION
        assert (await hive.store.get_task(task.id)).state == TaskState.WAITING_ON_HUMAN

    async def test_oracle_failure_asks_a_human(self, build_hive):
        hive = build_hive({"decomposition": OracleInvocationFailure("rate limited")})
        task = await root_task(hive)

        await hive.coordinator.decompose(task.id)

        pending = await hive.humans.pending_for(task.id)
        assert pending[0].purpose == InteractionPurpose.DECOMPOSITION
        assert "rate limited" in pending[0].question

    async def test_decomposition_is_truncated_to_budget(self, build_hive):
        hive = build_hive({"decomposition": REPORT_DECOMPOSITION}, max_subtasks_per_decomposition=2)
        task = await root_task(hive)

        subtasks = await hive.coordinator.decompose(task.id)

        assert len(subtasks) == 2
        decomposed = await hive.store.list_events(event_type="task.decomposed")
        assert decomposed[0].data["truncated"] is True

    async def test_exhausted_root_budget_asks_a_human(self, build_hive):
        hive = build_hive({"decomposition": REPORT_DECOMPOSITION}, max_total_subtasks_per_root=1)
        task = await root_task(hive)
        child = await hive.task_manager.create_task(title="Nested", description="Nested work", parent_id=task.id)
        await hive.task_manager.activate(child.id)

        assert await hive.coordinator.decompose(child.id) == []

        assert hive.oracle.calls_for("decomposition") == []
        assert (await hive.humans.pending_for(child.id))[0].purpose == InteractionPurpose.DECOMPOSITION

    async def test_already_decomposed_task_is_not_decomposed_again(self, build_hive):
        hive = build_hive({"decomposition": REPORT_DECOMPOSITION})
        task = await root_task(hive)
        await hive.coordinator.decompose(task.id)

        assert await hive.coordinator.decompose(task.id) == []

        assert len(hive.oracle.calls_for("decomposition")) == 1
        assert len(await hive.store.children_of(task.id)) == 3


class TestEvaluateProgress:

    async def test_finalizes_when_every_child_completed(self, hive):
        task = await hive.task_manager.activate((await root_task(hive)).id)
        for title in ("A", "B"):
            child = await hive.task_manager.create_task(title=title, description=f"{title} work", parent_id=task.id)
            await hive.task_manager.activate(child.id)
            await hive.task_manager.complete(child.id, f"{title} result")

        report = await hive.coordinator.evaluate_progress(task.id)

        assert report.completion_percentage == 100.0
        done = await hive.store.get_task(task.id)
        assert done.state == TaskState.COMPLETED
        assert done.result == "Final synthesized report"
        assert "A:\nA result" in hive.oracle.calls_for("completion_summary")[0].human_message

    async def test_summary_failure_merges_results(self, build_hive):
        hive = build_hive({"completion_summary": OracleInvocationFailure("down")})
        task = await hive.task_manager.activate((await root_task(hive)).id)
        child = await hive.task_manager.create_task(title="A", description="A work", parent_id=task.id)
        await hive.task_manager.activate(child.id)
        await hive.task_manager.complete(child.id, "A result")

        await hive.coordinator.evaluate_progress(task.id)

        result = (await hive.store.get_task(task.id)).result
        assert result.startswith("Completed 1 subtasks.")
        assert "A result" in result

    async def test_finalize_is_claimed_once(self, hive):
        task = await hive.task_manager.activate((await root_task(hive)).id)

        first = await hive.coordinator.finalize(task.id)
        second = await hive.coordinator.finalize(task.id)

        assert first.state == TaskState.COMPLETED
        assert second is None
        assert len(hive.oracle.calls_for("completion_summary")) == 1

    async def test_unhandled_failure_is_recovered(self, build_hive):
        hive = build_hive({"failure_analysis": "ACTION: SKIP\nREASON: optional"})
        task = await hive.task_manager.activate((await root_task(hive)).id)
        child = await hive.task_manager.create_task(title="A", description="A work", parent_id=task.id)
        await hive.task_manager.activate(child.id)
        await hive.task_manager.fail(child.id, "broken")

        await hive.coordinator.evaluate_progress(task.id)

        assert (await hive.store.get_task(child.id)).state == TaskState.COMPLETED
        pending = hive.dispatcher.pending_items(COORDINATOR_QUEUE)
        # subtask.failed, subtask.completed and subtask.recovery_selected
        assert [item.kind for item in pending] == [WorkKind.COORDINATE] * 3

    async def test_failure_escalated_to_human_stops_assignment(self, build_hive):
        hive = build_hive({"failure_analysis": "Hard to say what went wrong."})
        task = await hive.task_manager.activate((await root_task(hive)).id)
        broken = await hive.task_manager.create_task(title="A", description="A work", parent_id=task.id)
        await hive.task_manager.activate(broken.id)
        await hive.task_manager.fail(broken.id, "broken")
        waiting = await hive.task_manager.create_task(
            title="B", description="B work", parent_id=task.id, metadata={"suggested_agent": "ResearcherAgent"},
        )

        report = await hive.coordinator.evaluate_progress(task.id)

        assert report.scheduling is None
        assert (await hive.store.get_task(task.id)).state == TaskState.WAITING_ON_HUMAN
        assert (await hive.store.get_task(waiting.id)).state == TaskState.PENDING
        assert await hive.store.list_events(event_type="subtask.assigned") == []

        # sibling events while blocked only report
        report = await hive.coordinator.evaluate_progress(task.id)
        assert report.scheduling is None
        assert (await hive.store.get_task(waiting.id)).state == TaskState.PENDING

    async def test_retry_is_assigned_on_the_next_cycle(self, build_hive):
        hive = build_hive({"failure_analysis": "ACTION: RETRY\nREASON: transient"})
        task = await hive.task_manager.activate((await root_task(hive)).id)
        child = await hive.task_manager.create_task(
            title="A", description="A work", parent_id=task.id, metadata={"suggested_agent": "ResearcherAgent"},
        )
        await hive.task_manager.activate(child.id)
        await hive.task_manager.fail(child.id, "flaky")

        await hive.coordinator.evaluate_progress(task.id)
        assert (await hive.store.get_task(child.id)).state == TaskState.PENDING
        assert any(
            item.task_id == task.id and item.kind == WorkKind.COORDINATE
            for item in hive.dispatcher.pending_items(COORDINATOR_QUEUE)
        )

        await hive.coordinator.evaluate_progress(task.id)
        assert (await hive.store.get_task(child.id)).state == TaskState.ACTIVE

    async def test_repeated_evaluation_without_changes_assigns_nothing(self, build_hive):
        hive = build_hive({"decomposition": REPORT_DECOMPOSITION})
        task = await root_task(hive)
        await hive.coordinator.decompose(task.id)
        assigned_before = len(await hive.store.list_events(event_type="subtask.assigned"))
        queued_before = await hive.dispatcher.size()

        first = await hive.coordinator.evaluate_progress(task.id)
        second = await hive.coordinator.evaluate_progress(task.id)

        assert first.scheduling.assigned == [] and second.scheduling.assigned == []
        assert len(await hive.store.list_events(event_type="subtask.assigned")) == assigned_before
        assert await hive.dispatcher.size() == queued_before
        assert first.by_state == second.by_state == {"active": 2, "pending": 1}

    async def test_paused_task_only_reports(self, build_hive):
        hive = build_hive({"decomposition": REPORT_DECOMPOSITION})
        task = await root_task(hive)
        await hive.coordinator.decompose(task.id)
        await hive.task_manager.pause(task.id)

        report = await hive.coordinator.evaluate_progress(task.id)

        assert report.total == 3
        assert report.scheduling is None
        assert report.by_state == {"active": 2, "pending": 1}


class TestHumanResponses:

    async def test_decomposition_guidance_retries_decomposition(self, build_hive):
        hive = build_hive({"decomposition": ["no structure here", REPORT_DECOMPOSITION]})
        task = await root_task(hive)
        await hive.coordinator.decompose(task.id)
        interaction = (await hive.humans.pending_for(task.id))[0]

        await hive.humans.answer(interaction.id, "Split it into research, analysis and writing.")
        await hive.coordinator.apply_human_response(interaction.id)

        assert len(await hive.store.children_of(task.id)) == 3
        second_prompt = hive.oracle.calls_for("decomposition")[1].human_message
        assert "Guidance from a human reviewer: Split it into research" in second_prompt

    async def test_response_is_applied_once(self, build_hive):
        hive = build_hive({"decomposition": ["no structure here", REPORT_DECOMPOSITION, REPORT_DECOMPOSITION]})
        task = await root_task(hive)
        await hive.coordinator.decompose(task.id)
        interaction = (await hive.humans.pending_for(task.id))[0]
        await hive.humans.answer(interaction.id, "Try again.")

        await hive.coordinator.apply_human_response(interaction.id)
        await hive.coordinator.apply_human_response(interaction.id)

        assert len(hive.oracle.calls_for("decomposition")) == 2

    async def test_skip_response_skips_failed_subtask(self, build_hive):
        hive = build_hive({"failure_analysis": "unclear"})
        task = await hive.task_manager.activate((await root_task(hive)).id)
        child = await hive.task_manager.create_task(title="A", description="A work", parent_id=task.id)
        await hive.task_manager.activate(child.id)
        await hive.task_manager.fail(child.id, "broken")
        await hive.coordinator.evaluate_progress(task.id)
        interaction = (await hive.humans.pending_for(task.id))[0]
        assert interaction.purpose == InteractionPurpose.SUBTASK_FAILURE

        await hive.humans.answer(interaction.id, "Skip it, not needed")
        await hive.coordinator.apply_human_response(interaction.id)

        assert (await hive.store.get_task(child.id)).state == TaskState.COMPLETED

    async def test_guidance_response_requeues_failed_subtask(self, build_hive):
        hive = build_hive({"failure_analysis": "unclear"})
        task = await hive.task_manager.activate((await root_task(hive)).id)
        child = await hive.task_manager.create_task(title="A", description="A work", parent_id=task.id)
        await hive.task_manager.activate(child.id)
        await hive.task_manager.fail(child.id, "broken")
        await hive.coordinator.evaluate_progress(task.id)
        interaction = (await hive.humans.pending_for(task.id))[0]

        await hive.humans.answer(interaction.id, "Use the archived dataset")
        await hive.coordinator.apply_human_response(interaction.id)

        stored = await hive.store.get_task(child.id)
        assert stored.state == TaskState.PENDING
        assert "Guidance: Use the archived dataset" in stored.description

    async def test_agent_selection_response_sets_agent(self, hive):
        task = await hive.task_manager.activate((await root_task(hive)).id)
        child = await hive.task_manager.create_task(
            title="A", description="A work", parent_id=task.id, metadata={"suggested_agent": "WizardAgent"},
        )
        await hive.scheduler.run_cycle(task)
        interaction = (await hive.humans.pending_for(task.id))[0]

        await hive.humans.answer(interaction.id, "writer")
        await hive.coordinator.apply_human_response(interaction.id)

        assert (await hive.store.get_task(child.id)).suggested_agent == "WriterAgent"


class TestHandlers:

    async def test_subtask_event_enqueues_coordination(self, hive):
        event = Event(event_type="subtask.completed", data={"subtask_id": "s1", "task_id": "t1", "result": "ok"})

        await hive.coordinator.on_event(event)

        item = await hive.dispatcher.dequeue([COORDINATOR_QUEUE])
        assert item.kind == WorkKind.COORDINATE
        assert item.task_id == "t1"
        assert item.payload["causation_id"] == event.id

    async def test_determine_agent_kind_prefers_hint(self, build_hive):
        hive = build_hive({"agent_selection": "RECOMMENDED AGENT: WriterAgent"})
        task = await root_task(hive)
        hinted = await hive.task_manager.create_task(
            title="A", description="A work", parent_id=task.id, metadata={"agent_type": "AnalyzerAgent"},
        )
        plain = await hive.task_manager.create_task(title="B", description="B work", parent_id=task.id)

        assert await hive.coordinator.determine_agent_kind(hinted) == "AnalyzerAgent"
        assert await hive.coordinator.determine_agent_kind(plain) == "WriterAgent"

    async def test_determine_agent_kind_falls_back_to_researcher(self, build_hive):
        hive = build_hive({"agent_selection": OracleInvocationFailure("down")})
        task = await root_task(hive)
        plain = await hive.task_manager.create_task(title="B", description="B work", parent_id=task.id)

        assert await hive.coordinator.determine_agent_kind(plain) == AgentKind.RESEARCHER.value

    async def test_run_releases_coordinator_slot(self, hive):
        task = await root_task(hive)
        await hive.limiter.try_acquire(AgentKind.COORDINATOR)

        await hive.coordinator.run(WorkItem(kind=WorkKind.DECOMPOSE, task_id=task.id, payload={"release_quota": True}))

        assert await hive.limiter.in_use(AgentKind.COORDINATOR) == 0
