"""
Celery 任务：三个通道的消息处理与维护任务。

- tasks.process_message: urgent / normal 通道共用，执行加锁 -> 调用外部服务 -> 持久化；
- tasks.buffer_wait: buffer 通道，等待会话锁释放后重新路由；
- tasks.reprocess_dead_letters: beat 定时重投到期的死信；
- tasks.sample_queue_depth: beat 定时采样各通道积压量（仅 Redis broker）。

每个任务在自己的 asyncio.run() 中构建一套运行时组件，结束时释放连接。
"""

from __future__ import annotations

import asyncio
import datetime as dt
from typing import Any

from celery import shared_task
from celery.signals import task_revoked
from redis.asyncio import Redis

from reply_pipeline.celery_app import BROKER_PRIORITY_SEP, BROKER_PRIORITY_STEPS, celery_app
from reply_pipeline.errors import StoreUnavailableError
from reply_pipeline.logging_config import logger
from reply_pipeline.pipeline.runtime import PipelineRuntime, build_runtime
from reply_pipeline.queues.dispatcher import CeleryLaneDispatcher, sample_queue_depths
from reply_pipeline.queues.lanes import (
    BUFFER_WAIT_TASK,
    PIPELINE_TASKS,
    PROCESS_MESSAGE_TASK,
    REPROCESS_DEAD_LETTERS_TASK,
    SAMPLE_QUEUE_DEPTH_TASK,
)
from reply_pipeline.redis_client import close_redis_client, get_redis_client
from reply_pipeline.schemas import TaskEnvelope
from reply_pipeline.settings import settings


def _build_runtime() -> PipelineRuntime:
    return build_runtime(get_redis_client(), dispatcher=CeleryLaneDispatcher())


async def _shutdown(runtime: PipelineRuntime) -> None:
    try:
        await runtime.aclose()
    finally:
        await close_redis_client()


async def run_process_message(envelope_data: dict[str, Any]) -> str:
    envelope = TaskEnvelope.model_validate(envelope_data)
    runtime = _build_runtime()
    try:
        outcome = await runtime.processor.process(envelope)
        return outcome.value
    finally:
        await _shutdown(runtime)


async def run_buffer_wait(envelope_data: dict[str, Any]) -> str:
    envelope = TaskEnvelope.model_validate(envelope_data)
    runtime = _build_runtime()
    try:
        result = await runtime.buffer_waiter.run(envelope)
        return result.outcome.value
    finally:
        await _shutdown(runtime)


async def run_expired(envelope_data: dict[str, Any]) -> str:
    envelope = TaskEnvelope.model_validate(envelope_data)
    runtime = _build_runtime()
    try:
        outcome = await runtime.retry_handler.handle_expired(envelope)
        return outcome.value
    finally:
        await _shutdown(runtime)


async def run_reprocess_dead_letters(limit: int | None = None) -> int:
    runtime = _build_runtime()
    try:
        return await runtime.requeuer.reprocess_due(
            now=dt.datetime.now(dt.UTC),
            limit=limit or settings.dead_letter_reprocess_batch,
        )
    finally:
        await _shutdown(runtime)


async def run_sample_queue_depth() -> dict[str, int]:
    if not settings.celery_broker_url.startswith(("redis://", "rediss://")):
        logger.debug("queue depth sampling skipped: broker is not Redis")
        return {}
    broker_redis = Redis.from_url(settings.celery_broker_url, decode_responses=True)
    try:
        depths = await sample_queue_depths(
            broker_redis, sep=BROKER_PRIORITY_SEP, priority_steps=BROKER_PRIORITY_STEPS
        )
    finally:
        await broker_redis.aclose()
    return {lane.value: depth for lane, depth in depths.items()}


@shared_task(
    name=PROCESS_MESSAGE_TASK,
    autoretry_for=(StoreUnavailableError,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=None,
)
def process_message(envelope: dict[str, Any]) -> str:
    """urgent / normal 通道：处理一条消息，返回处理结果（completed / deferred / ...）。"""

    return asyncio.run(run_process_message(envelope))


@shared_task(
    name=BUFFER_WAIT_TASK,
    autoretry_for=(StoreUnavailableError,),
    retry_backoff=True,
    retry_backoff_max=300,
    max_retries=None,
)
def buffer_wait(envelope: dict[str, Any]) -> str:
    """buffer 通道：等待会话锁释放（有上限），然后重新路由。"""

    return asyncio.run(run_buffer_wait(envelope))


@shared_task(name=REPROCESS_DEAD_LETTERS_TASK)
def reprocess_dead_letters(limit: int | None = None) -> int:
    """把 next_retry_at 已到期的死信重新投递到 normal 通道。"""

    requeued = asyncio.run(run_reprocess_dead_letters(limit))
    if requeued:
        logger.info("Celery reprocess_dead_letters requeued %d messages", requeued)
    return requeued


@shared_task(name=SAMPLE_QUEUE_DEPTH_TASK)
def sample_queue_depth() -> dict[str, int]:
    return asyncio.run(run_sample_queue_depth())


@task_revoked.connect
def handle_expired_task(sender=None, request=None, expired=False, **kwargs):
    """
    过期的通道任务（超过通道 TTL 仍未被消费）交给重试处理器，
    由它决定重投还是进入死信。
    """

    if not expired or request is None:
        return
    task_name = getattr(sender, "name", None) or getattr(request, "task_name", None)
    if task_name not in PIPELINE_TASKS:
        return
    envelope_data = (getattr(request, "kwargs", None) or {}).get("envelope")
    if not envelope_data:
        logger.warning("expired task %s carried no envelope; nothing to recover", task_name)
        return
    try:
        outcome = asyncio.run(run_expired(envelope_data))
    except Exception:
        logger.exception("failed to handle expired task %s", task_name)
        return
    logger.info(
        "expired task %s for message %s handled: %s",
        task_name,
        envelope_data.get("message_id"),
        outcome,
    )


celery_app.conf.beat_schedule = getattr(celery_app.conf, "beat_schedule", {}) or {}
celery_app.conf.beat_schedule.update(
    {
        "dead-letter-reprocess": {
            "task": REPROCESS_DEAD_LETTERS_TASK,
            "schedule": settings.dead_letter_reprocess_interval_seconds,
        },
        "queue-depth-sample": {
            "task": SAMPLE_QUEUE_DEPTH_TASK,
            "schedule": settings.queue_depth_sample_interval_seconds,
        },
    }
)


__all__ = [
    "buffer_wait",
    "handle_expired_task",
    "process_message",
    "reprocess_dead_letters",
    "run_buffer_wait",
    "run_expired",
    "run_process_message",
    "run_reprocess_dead_letters",
    "run_sample_queue_depth",
    "sample_queue_depth",
]
