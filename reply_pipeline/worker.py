"""
按通道启动 Celery worker 或 beat。

    python -m reply_pipeline.worker --lane urgent
    python -m reply_pipeline.worker --lane buffer --concurrency 2
    python -m reply_pipeline.worker --beat
"""

from __future__ import annotations

import argparse

from reply_pipeline.celery_app import MAINTENANCE_QUEUE, celery_app
from reply_pipeline.logging_config import logger, setup_logging
from reply_pipeline.queues.lanes import get_lane_spec
from reply_pipeline.schemas import Lane


def build_worker_argv(
    lane: Lane | str | None,
    *,
    concurrency: int | None = None,
    loglevel: str = "INFO",
    maintenance: bool = False,
) -> list[str]:
    """argv for `celery worker` consuming one lane (and optionally the maintenance queue)."""
    queues: list[str] = []
    size = concurrency
    hostname = "maintenance@%h"
    if lane is not None:
        spec = get_lane_spec(lane)
        queues.append(spec.queue_name)
        size = size or spec.concurrency
        hostname = f"{spec.lane.value}@%h"
    if maintenance or not queues:
        queues.append(MAINTENANCE_QUEUE)
    return [
        "worker",
        "-Q",
        ",".join(queues),
        "-c",
        str(size or 1),
        "-n",
        hostname,
        "--loglevel",
        loglevel,
        "-O",
        "fair",
    ]


def build_beat_argv(*, loglevel: str = "INFO") -> list[str]:
    return ["beat", "--loglevel", loglevel]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start a reply pipeline worker")
    parser.add_argument(
        "--lane",
        choices=[lane.value for lane in Lane],
        default=None,
        help="要消费的通道；不指定时只消费 maintenance 队列",
    )
    parser.add_argument("--concurrency", type=int, default=None, help="覆盖 *_CONCURRENCY 配置")
    parser.add_argument(
        "--with-maintenance",
        action="store_true",
        help="同时消费 maintenance 队列（死信重投、队列深度采样）",
    )
    parser.add_argument("--beat", action="store_true", help="启动 beat 而不是 worker")
    parser.add_argument("--loglevel", default="INFO")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    setup_logging()

    if args.beat:
        celery_argv = build_beat_argv(loglevel=args.loglevel)
    else:
        celery_argv = build_worker_argv(
            args.lane,
            concurrency=args.concurrency,
            loglevel=args.loglevel,
            maintenance=args.with_maintenance,
        )
    logger.info("starting celery: %s", " ".join(celery_argv))
    celery_app.start(argv=celery_argv)


if __name__ == "__main__":
    main()
