import argparse
import asyncio
import logging
import sys

from flipforge.db import engine
from flipforge.models import Base
from flipforge.runtime import PipelineRuntime, build_runtime
from flipforge.services.exceptions import PipelineError
from flipforge.session_factory import session_factory
from flipforge.settings import settings

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("flipforge.cli")


def run_cleanup_logs(runtime: PipelineRuntime, days: int | None):
    """보존 기간이 지난 pipeline_logs 삭제"""
    deleted = runtime.sweep_logs(days)
    logger.info(f"[CLI] Deleted {deleted} pipeline log(s) older than {days or runtime.config.log_retention_days} day(s)")


async def _run_pending(runtime: PipelineRuntime) -> int:
    if runtime.queue.worker_count <= 0:
        runtime.queue.worker_count = 1
    runtime.queue.start()
    try:
        count = runtime.queue.recover()
        await runtime.queue.drain()
        await runtime.orchestrator.wait_background()
        return count
    finally:
        await runtime.queue.stop()


def run_recover(runtime: PipelineRuntime, execute: bool):
    """pending + can_start 상태로 멈춘 stage 를 보고하거나 실행"""
    stages = runtime.store.eligible_pending_stages()
    for product_id, stage in stages:
        logger.info(f"[CLI] Eligible: product={product_id} stage={stage}")
    if not execute:
        logger.info(f"[CLI] {len(stages)} stage(s) eligible for recovery (use --execute to run them)")
        return
    count = asyncio.run(_run_pending(runtime))
    logger.info(f"[CLI] Executed {count} recovered stage(s)")


def main():
    parser = argparse.ArgumentParser(description="flipforge pipeline operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    cleanup_parser = subparsers.add_parser("cleanup-logs", help="Delete pipeline logs past the retention window")
    cleanup_parser.add_argument("--days", type=int, default=None, help="Retention in days (default: LOG_RETENTION_DAYS)")

    recover_parser = subparsers.add_parser("recover", help="Report or run stages left pending after a restart")
    recover_parser.add_argument("--execute", action="store_true")

    subparsers.add_parser("create-tables", help="Create database tables")

    args = parser.parse_args()

    if args.command == "create-tables":
        Base.metadata.create_all(bind=engine)
        logger.info("[CLI] Tables created")
        return
    if args.command not in ("cleanup-logs", "recover"):
        parser.print_help()
        return

    runtime = build_runtime(session_factory, settings)
    try:
        if args.command == "cleanup-logs":
            run_cleanup_logs(runtime, args.days)
        else:
            run_recover(runtime, args.execute)
    except PipelineError as e:
        logger.error(f"[CLI] {args.command} failed: {e.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
