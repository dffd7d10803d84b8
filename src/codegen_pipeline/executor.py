from __future__ import annotations

import asyncio
import logging
from typing import Any

from .context import ExecutionContext
from .models import BuildNode, BuildSequence, BuildStep, ExecutionSummary

logger = logging.getLogger(__name__)


class BuildSequenceExecutor:
    """Walks the stages of a pipeline, serially or concurrently, in declaration order.

    Readiness waits use the context's state-change notification with the
    configured poll interval as timeout, so budgets are counted in attempts
    rather than wall-clock time.
    """

    def __init__(self, context: ExecutionContext) -> None:
        self.context = context
        self.settings = context.settings
        self._blocked: set[str] = set()

    def _blocking_prerequisites(self, node: BuildNode) -> list[str]:
        state = self.context.state
        return [dep for dep in node.requires if dep in state.failed or dep in self._blocked]

    def _drop_if_blocked(self, node: BuildNode) -> bool:
        blockers = self._blocking_prerequisites(node)
        if not blockers:
            return False
        if node.id not in self._blocked:
            self._blocked.add(node.id)
            logger.error("Task %s is blocked by failed prerequisites: %s", node.id, ", ".join(blockers))
        return True

    async def execute_node(self, node: BuildNode) -> bool:
        """Run ``node`` if it is ready. Returns True once the task has completed."""
        context = self.context
        state = context.state
        if node.id in state.completed:
            return True
        if node.id in state.failed or node.id in state.pending:
            return False
        if not context.can_execute(node.id):
            missing = [dep for dep in node.requires if dep not in state.completed]
            logger.info("Waiting for dependencies of %s: %s", node.id, ", ".join(missing))
            await context.mark_waiting(node.id)
            await context.wait_for_state_change(self.settings.poll_interval_seconds)
            return False

        try:
            await context.run(node.id, dependencies=context.dependency_results(node.id))
        except Exception as exc:  # noqa: BLE001 - recorded as failed by the context
            logger.warning("Continuing after task %s failed: %s", node.id, exc)
            return False
        return True

    async def _execute_serial(self, step: BuildStep) -> None:
        budget = self.settings.readiness_max_attempts
        for node in step.nodes:
            for _ in range(budget):
                if self._drop_if_blocked(node):
                    break
                if await self.execute_node(node):
                    break
                if node.id in self.context.state.failed:
                    break
            else:
                logger.error("Giving up on task %s after %d readiness attempts", node.id, budget)

    async def _execute_parallel(self, step: BuildStep) -> None:
        state = self.context.state
        remaining = [node for node in step.nodes if node.id not in state.completed and node.id not in state.failed]
        no_progress = 0
        while remaining:
            remaining = [node for node in remaining if not self._drop_if_blocked(node)]
            if not remaining:
                break
            ready = [node for node in remaining if self.context.can_execute(node.id)]
            if not ready:
                no_progress += 1
                if no_progress > self.settings.no_progress_limit:
                    logger.error(
                        "Step %s made no progress after %d attempts; unfinished tasks: %s",
                        step.id,
                        self.settings.no_progress_limit,
                        ", ".join(node.id for node in remaining),
                    )
                    break
                for node in remaining:
                    await self.context.mark_waiting(node.id)
                await self.context.wait_for_state_change(self.settings.poll_interval_seconds)
                continue

            no_progress = 0
            logger.info("Step %s running %d tasks concurrently", step.id, len(ready))
            await asyncio.gather(*(self.execute_node(node) for node in ready))
            remaining = [node for node in remaining if node.id not in state.completed and node.id not in state.failed]

    async def execute_step(self, step: BuildStep) -> bool:
        """Run every task in ``step``. Returns True when all of them completed."""
        if step.parallel:
            await self._execute_parallel(step)
        else:
            await self._execute_serial(step)
        return all(node.id in self.context.state.completed for node in step.nodes)

    async def execute_sequence(self) -> ExecutionSummary:
        context = self.context
        sequence = context.sequence
        monitor = context.monitor
        monitor.start_sequence_execution(sequence, step_ids=[step.id for step in context.steps])
        aborted_step: str | None = None
        try:
            for step in context.steps:
                logger.info("Executing step %s (%d tasks, parallel=%s)", step.id, len(step.nodes), step.parallel)
                monitor.start_step_execution(step.id, sequence.id, parallel=step.parallel, total_nodes=len(step.nodes))
                try:
                    complete = await self.execute_step(step)
                finally:
                    monitor.end_step_execution(step.id, sequence.id)
                if not complete:
                    aborted_step = step.id
                    logger.error("Step %s did not complete; remaining steps are skipped", step.id)
                    break
        finally:
            monitor.end_sequence_execution(sequence.id)

        state = context.state
        all_ids = [node.id for node in sequence.iter_nodes()]
        return ExecutionSummary(
            sequence_id=sequence.id,
            success=aborted_step is None and all(task_id in state.completed for task_id in all_ids),
            completed=[task_id for task_id in all_ids if task_id in state.completed],
            failed=[task_id for task_id in all_ids if task_id in state.failed],
            not_run=[
                task_id for task_id in all_ids if task_id not in state.completed and task_id not in state.failed
            ],
            execution_order=list(context.execution_order),
            aborted_step=aborted_step,
        )


async def run_sequence(sequence: BuildSequence, **context_options: Any) -> tuple[ExecutionContext, ExecutionSummary]:
    """Build a context for ``sequence``, execute it and return both."""
    context = ExecutionContext(sequence, **context_options)
    summary = await BuildSequenceExecutor(context).execute_sequence()
    return context, summary
