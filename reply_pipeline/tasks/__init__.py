from __future__ import annotations

"""
Celery 任务定义入口。

- debug_ping: 简单的 ping/pong 测试任务，用于验证 worker 与 broker 连通；
- 三个通道任务与维护任务定义在 `reply_pipeline.tasks.pipeline` 中。
"""

from celery import shared_task

from reply_pipeline.logging_config import logger


@shared_task(name="tasks.debug_ping")
def debug_ping() -> str:
    """
    简单的 Celery 测试任务。

    用法示例（在容器 / 本地虚拟环境中）:
        celery -A reply_pipeline.celery_app.celery_app call tasks.debug_ping
    """

    logger.info("Celery debug_ping task executed")
    return "pong"


__all__ = ["debug_ping"]
