from fastapi import APIRouter, Depends
import logging

from flipforge.api.deps import get_runtime
from flipforge.runtime import PipelineRuntime

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
def health(runtime: PipelineRuntime = Depends(get_runtime)) -> dict:
    """
    서버, 데이터베이스, stage 큐 상태를 확인합니다.
    """
    db_ok = False
    try:
        db_ok = runtime.store.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "ok" if db_ok else "degraded",
        "database": "ok" if db_ok else "error",
        "workers": runtime.queue.worker_count if runtime.queue.running else 0,
    }
