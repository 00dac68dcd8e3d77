"""
Lane table: one durable, priority-ordered queue per lane.

Each lane is bound to the pipeline's topic exchange with "<lane>.#" so a
routing key of "<lane>.<session_id>" lands on exactly that lane's queue.
"""

from __future__ import annotations

from dataclasses import dataclass

from reply_pipeline.schemas import Lane
from reply_pipeline.settings import settings

PROCESS_MESSAGE_TASK = "tasks.process_message"
BUFFER_WAIT_TASK = "tasks.buffer_wait"
REPROCESS_DEAD_LETTERS_TASK = "tasks.reprocess_dead_letters"
SAMPLE_QUEUE_DEPTH_TASK = "tasks.sample_queue_depth"

MAX_PRIORITY = 10


@dataclass(frozen=True)
class LaneSpec:
    lane: Lane
    queue_name: str
    binding_key: str
    task_name: str
    max_priority: int = MAX_PRIORITY

    @property
    def message_ttl_seconds(self) -> int:
        return settings.lane_ttl(self.lane)

    @property
    def concurrency(self) -> int:
        return settings.lane_concurrency(self.lane)

    @property
    def max_retries(self) -> int:
        return settings.lane_max_retries(self.lane)


def _spec(lane: Lane, task_name: str) -> LaneSpec:
    return LaneSpec(
        lane=lane,
        queue_name=f"reply.{lane.value}",
        binding_key=f"{lane.value}.#",
        task_name=task_name,
    )


LANE_SPECS: dict[Lane, LaneSpec] = {
    Lane.URGENT: _spec(Lane.URGENT, PROCESS_MESSAGE_TASK),
    Lane.NORMAL: _spec(Lane.NORMAL, PROCESS_MESSAGE_TASK),
    Lane.BUFFER: _spec(Lane.BUFFER, BUFFER_WAIT_TASK),
}

PIPELINE_TASKS = frozenset({PROCESS_MESSAGE_TASK, BUFFER_WAIT_TASK})


def get_lane_spec(lane: Lane | str) -> LaneSpec:
    return LANE_SPECS[Lane(lane)]


__all__ = [
    "BUFFER_WAIT_TASK",
    "LANE_SPECS",
    "LaneSpec",
    "MAX_PRIORITY",
    "PIPELINE_TASKS",
    "PROCESS_MESSAGE_TASK",
    "REPROCESS_DEAD_LETTERS_TASK",
    "SAMPLE_QUEUE_DEPTH_TASK",
    "get_lane_spec",
]
