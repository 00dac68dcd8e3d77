from __future__ import annotations

"""
Celery 应用实例。

三个通道各自是一个持久化、带优先级的队列，绑定在同一个 topic exchange 上
（routing key 为 "<lane>.<session_id>"）；定时任务走 maintenance 队列。

使用方式::

    # 按通道启动 worker（并发数取自 *_CONCURRENCY）
    python -m reply_pipeline.worker --lane urgent
    python -m reply_pipeline.worker --lane normal
    python -m reply_pipeline.worker --lane buffer

    # 启动 beat（死信重投、队列深度采样）
    python -m reply_pipeline.worker --beat
"""

from celery import Celery
from celery.signals import beat_init, worker_process_init
from kombu import Exchange, Queue

from reply_pipeline.logging_config import setup_logging
from reply_pipeline.queues.lanes import (
    BUFFER_WAIT_TASK,
    LANE_SPECS,
    MAX_PRIORITY,
    REPROCESS_DEAD_LETTERS_TASK,
    SAMPLE_QUEUE_DEPTH_TASK,
)
from reply_pipeline.schemas import Lane, LanePriority
from reply_pipeline.settings import settings

MAINTENANCE_QUEUE = "reply.maintenance"

# Redis transport emulates priorities with one list per step.
BROKER_PRIORITY_STEPS = list(range(MAX_PRIORITY))
BROKER_PRIORITY_SEP = ":"

pipeline_exchange = Exchange(settings.pipeline_exchange, type="topic", durable=True)


def build_lane_queues() -> tuple[Queue, ...]:
    queues = [
        Queue(
            spec.queue_name,
            pipeline_exchange,
            routing_key=spec.binding_key,
            durable=True,
            # 通道 TTL 通过每个任务的 expires 生效：过期任务仍会投递给 worker 并触发
            # task_revoked(expired=True)。不设置 x-message-ttl，否则 broker 会直接丢弃过期消息。
            queue_arguments={"x-max-priority": spec.max_priority},
        )
        for spec in LANE_SPECS.values()
    ]
    queues.append(
        Queue(MAINTENANCE_QUEUE, pipeline_exchange, routing_key="maintenance.#", durable=True)
    )
    return tuple(queues)


celery_app = Celery(
    "reply_pipeline",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_queues=build_lane_queues(),
    task_default_queue=MAINTENANCE_QUEUE,
    task_default_exchange=settings.pipeline_exchange,
    task_default_exchange_type="topic",
    task_default_routing_key="maintenance.default",
    task_default_priority=int(LanePriority.DEFAULT),
    task_queue_max_priority=MAX_PRIORITY,
    task_routes={
        BUFFER_WAIT_TASK: {
            "queue": LANE_SPECS[Lane.BUFFER].queue_name,
            "exchange": settings.pipeline_exchange,
        },
        REPROCESS_DEAD_LETTERS_TASK: {"queue": MAINTENANCE_QUEUE},
        SAMPLE_QUEUE_DEPTH_TASK: {"queue": MAINTENANCE_QUEUE},
    },
    # 一次外部调用 8~10s：只在处理完成后 ack，worker 崩溃时消息重新投递，且不预取积压。
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_ignore_result=True,
    broker_transport_options={
        "priority_steps": BROKER_PRIORITY_STEPS,
        "sep": BROKER_PRIORITY_SEP,
        "queue_order_strategy": "priority",
        "visibility_timeout": 3600,
    },
    imports=(
        "reply_pipeline.tasks",
        "reply_pipeline.tasks.pipeline",
    ),
)

# 强制立即发现任务：仅导入 celery_app（测试、send_task 方）时也能看到已注册的 tasks.*。
celery_app.autodiscover_tasks(["reply_pipeline"], force=True)
celery_app.loader.import_default_modules()


@worker_process_init.connect
def init_worker_logging(**kwargs):
    """在 Celery worker 进程初始化时配置应用日志。"""
    setup_logging()


@beat_init.connect
def init_beat_logging(**kwargs):
    """在 Celery beat 进程初始化时配置应用日志。"""
    setup_logging()


__all__ = [
    "BROKER_PRIORITY_SEP",
    "BROKER_PRIORITY_STEPS",
    "MAINTENANCE_QUEUE",
    "build_lane_queues",
    "celery_app",
    "pipeline_exchange",
]
