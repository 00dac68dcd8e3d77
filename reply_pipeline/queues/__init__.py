from .dispatcher import CeleryLaneDispatcher, LaneDispatcher, sample_queue_depths
from .lanes import (
    BUFFER_WAIT_TASK,
    LANE_SPECS,
    PROCESS_MESSAGE_TASK,
    LaneSpec,
    get_lane_spec,
)
from .memory_broker import InMemoryLaneBroker

__all__ = [
    "BUFFER_WAIT_TASK",
    "CeleryLaneDispatcher",
    "InMemoryLaneBroker",
    "LANE_SPECS",
    "LaneDispatcher",
    "LaneSpec",
    "PROCESS_MESSAGE_TASK",
    "get_lane_spec",
    "sample_queue_depths",
]
