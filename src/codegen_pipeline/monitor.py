from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .canonical import to_canonical_json
from .models import BuildSequence, TaskStatus

logger = logging.getLogger(__name__)

# Rough characters-per-token ratio used for cost accounting without a tokenizer.
_CHARS_PER_TOKEN = 4


def _now() -> datetime:
    return datetime.now(UTC)


def _duration_ms(start: datetime | None, end: datetime | None) -> float:
    if start is None or end is None:
        return 0.0
    return (end - start).total_seconds() * 1000.0


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return max(1, len(text) // _CHARS_PER_TOKEN)


@dataclass
class ModelCallRecord:
    label: str
    model: str
    duration_ms: float
    input_tokens: int
    output_tokens: int
    recorded_at: datetime = field(default_factory=_now)


@dataclass
class NodeMetrics:
    node_id: str
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float = 0.0
    status: TaskStatus = TaskStatus.UNSTARTED
    retry_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    model_calls: list[ModelCallRecord] = field(default_factory=list)
    error: str | None = None

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StepMetrics:
    step_id: str
    parallel: bool = False
    total_nodes: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float = 0.0
    node_metrics: dict[str, NodeMetrics] = field(default_factory=dict)

    @property
    def completed_nodes(self) -> int:
        return sum(1 for node in self.node_metrics.values() if node.status is TaskStatus.COMPLETED)

    @property
    def failed_nodes(self) -> int:
        return sum(1 for node in self.node_metrics.values() if node.status is TaskStatus.FAILED)


@dataclass
class SequenceMetrics:
    sequence_id: str
    declared_steps: list[str] = field(default_factory=list)
    total_nodes: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: float = 0.0
    step_metrics: dict[str, StepMetrics] = field(default_factory=dict)

    def _declared(self) -> list[StepMetrics]:
        return [self.step_metrics[step_id] for step_id in self.declared_steps if step_id in self.step_metrics]

    @property
    def total_steps(self) -> int:
        return len(self.declared_steps)

    @property
    def completed_steps(self) -> int:
        return sum(
            1
            for step in self._declared()
            if step.end_time is not None and step.failed_nodes == 0 and step.completed_nodes == step.total_nodes
        )

    @property
    def failed_steps(self) -> int:
        return sum(1 for step in self._declared() if step.failed_nodes > 0)

    @property
    def completed_nodes(self) -> int:
        return sum(step.completed_nodes for step in self._declared())

    @property
    def failed_nodes(self) -> int:
        return sum(step.failed_nodes for step in self._declared())

    @property
    def success_rate(self) -> float:
        if self.total_nodes == 0:
            return 0.0
        return self.completed_nodes / self.total_nodes * 100.0


class BuildMonitor:
    """Collects timing, retry and cost metrics for pipeline runs."""

    def __init__(self) -> None:
        self._sequences: dict[str, SequenceMetrics] = {}

    # -- record access --

    def _sequence(self, sequence_id: str) -> SequenceMetrics:
        metrics = self._sequences.get(sequence_id)
        if metrics is None:
            metrics = SequenceMetrics(sequence_id=sequence_id)
            self._sequences[sequence_id] = metrics
        return metrics

    def _step(self, sequence_id: str, step_id: str) -> StepMetrics:
        sequence = self._sequence(sequence_id)
        step = sequence.step_metrics.get(step_id)
        if step is None:
            step = StepMetrics(step_id=step_id)
            sequence.step_metrics[step_id] = step
        return step

    def _node(self, sequence_id: str, step_id: str, node_id: str) -> NodeMetrics:
        step = self._step(sequence_id, step_id)
        node = step.node_metrics.get(node_id)
        if node is None:
            node = NodeMetrics(node_id=node_id)
            step.node_metrics[node_id] = node
        return node

    # -- lifecycle --

    def start_sequence_execution(self, sequence: BuildSequence, *, step_ids: list[str] | None = None) -> None:
        metrics = self._sequence(sequence.id)
        metrics.start_time = _now()
        metrics.declared_steps = list(step_ids) if step_ids is not None else [step.id for step in sequence.steps]
        metrics.total_nodes = sum(1 for _ in sequence.iter_nodes())
        logger.info("Sequence %s started with %d tasks", sequence.id, metrics.total_nodes)

    def end_sequence_execution(self, sequence_id: str) -> SequenceMetrics:
        metrics = self._sequence(sequence_id)
        metrics.end_time = _now()
        metrics.duration_ms = _duration_ms(metrics.start_time, metrics.end_time)
        logger.info(
            "Sequence %s finished in %.0fms, success rate %.2f%%",
            sequence_id,
            metrics.duration_ms,
            metrics.success_rate,
        )
        return metrics

    def start_step_execution(self, step_id: str, sequence_id: str, *, parallel: bool, total_nodes: int) -> None:
        step = self._step(sequence_id, step_id)
        step.parallel = parallel
        step.total_nodes = total_nodes
        step.start_time = _now()

    def end_step_execution(self, step_id: str, sequence_id: str) -> StepMetrics:
        step = self._step(sequence_id, step_id)
        step.end_time = _now()
        step.duration_ms = _duration_ms(step.start_time, step.end_time)
        return step

    def start_node_execution(self, node_id: str, sequence_id: str, step_id: str) -> None:
        node = self._node(sequence_id, step_id, node_id)
        node.start_time = _now()
        node.end_time = None
        node.status = TaskStatus.PENDING
        node.error = None

    def end_node_execution(
        self,
        node_id: str,
        sequence_id: str,
        step_id: str,
        *,
        success: bool,
        error: BaseException | str | None = None,
    ) -> NodeMetrics:
        node = self._node(sequence_id, step_id, node_id)
        node.end_time = _now()
        node.duration_ms = _duration_ms(node.start_time, node.end_time)
        node.status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        node.error = None if error is None else str(error)
        return node

    def increment_node_retry(self, node_id: str, sequence_id: str, step_id: str) -> int:
        node = self._node(sequence_id, step_id, node_id)
        node.retry_count += 1
        return node.retry_count

    def record_model_call(
        self,
        node_id: str,
        sequence_id: str,
        step_id: str,
        *,
        label: str,
        model: str,
        duration_ms: float,
        input_text: str,
        output_text: str,
    ) -> ModelCallRecord:
        node = self._node(sequence_id, step_id, node_id)
        record = ModelCallRecord(
            label=label,
            model=model,
            duration_ms=duration_ms,
            input_tokens=estimate_tokens(input_text),
            output_tokens=estimate_tokens(output_text),
        )
        node.model_calls.append(record)
        node.input_tokens += record.input_tokens
        node.output_tokens += record.output_tokens
        logger.debug("Model call %s on %s took %.0fms", label, node_id, duration_ms)
        return record

    # -- reporting --

    def get_sequence_metrics(self, sequence_id: str) -> SequenceMetrics | None:
        return self._sequences.get(sequence_id)

    def get_node_metrics(self, sequence_id: str, step_id: str, node_id: str) -> NodeMetrics | None:
        sequence = self._sequences.get(sequence_id)
        if sequence is None:
            return None
        step = sequence.step_metrics.get(step_id)
        if step is None:
            return None
        return step.node_metrics.get(node_id)

    def get_report(self, sequence_id: str) -> dict[str, Any] | None:
        metrics = self._sequences.get(sequence_id)
        if metrics is None:
            return None
        return {
            "sequence_id": metrics.sequence_id,
            "start_time": metrics.start_time,
            "end_time": metrics.end_time,
            "duration_ms": metrics.duration_ms,
            "total_steps": metrics.total_steps,
            "completed_steps": metrics.completed_steps,
            "failed_steps": metrics.failed_steps,
            "total_nodes": metrics.total_nodes,
            "completed_nodes": metrics.completed_nodes,
            "failed_nodes": metrics.failed_nodes,
            "success_rate": round(metrics.success_rate, 2),
            "steps": [
                {
                    "step_id": step.step_id,
                    "declared": step.step_id in metrics.declared_steps,
                    "parallel": step.parallel,
                    "duration_ms": step.duration_ms,
                    "total_nodes": step.total_nodes,
                    "completed_nodes": step.completed_nodes,
                    "failed_nodes": step.failed_nodes,
                    "nodes": [
                        {
                            "node_id": node.node_id,
                            "status": node.status,
                            "duration_ms": node.duration_ms,
                            "retry_count": node.retry_count,
                            "tokens_used": node.tokens_used,
                            "model_calls": [asdict(call) for call in node.model_calls],
                            "error": node.error,
                        }
                        for node in step.node_metrics.values()
                    ],
                }
                for step in metrics.step_metrics.values()
            ],
        }

    def generate_text_report(self, sequence_id: str) -> str:
        metrics = self._sequences.get(sequence_id)
        if metrics is None:
            return f"No metrics found for sequence {sequence_id}"

        header = f"Build Sequence Report: {sequence_id}"
        lines = [
            header,
            "=" * len(header),
            f"Total Duration: {metrics.duration_ms:.0f}ms",
            f"Success Rate: {metrics.success_rate:.2f}%",
            f"Total Steps: {metrics.total_steps}",
            f"Total Nodes: {metrics.total_nodes}",
            "",
            "Step Details:",
        ]
        for step in metrics.step_metrics.values():
            lines.append(
                f"  Step {step.step_id}: {step.duration_ms:.0f}ms "
                f"({step.completed_nodes}/{step.total_nodes or len(step.node_metrics)} completed, "
                f"{step.failed_nodes} failed, parallel={step.parallel})"
            )
            for node in step.node_metrics.values():
                line = (
                    f"    - {node.node_id}: {node.status.value} in {node.duration_ms:.0f}ms, "
                    f"retries={node.retry_count}, tokens={node.tokens_used}"
                )
                if node.error:
                    line += f", error={node.error}"
                lines.append(line)
        return "\n".join(lines)

    def export_report(self, sequence_id: str, path: Path) -> Path:
        report = self.get_report(sequence_id)
        if report is None:
            raise KeyError(f"No metrics found for sequence {sequence_id}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(to_canonical_json(report), encoding="utf-8")
        return path

    def evict(self, sequence_id: str) -> bool:
        return self._sequences.pop(sequence_id, None) is not None
