from fastapi import APIRouter, Depends

from flipforge.api.deps import get_runtime
from flipforge.runtime import PipelineRuntime

router = APIRouter()


@router.get("/queue")
def get_queue(runtime: PipelineRuntime = Depends(get_runtime)):
    """stage 작업 큐 상태 (대기 / 실행 중)."""
    return runtime.queue.snapshot()


@router.post("/recover")
async def recover_pending_stages(runtime: PipelineRuntime = Depends(get_runtime)):
    recovered = runtime.queue.recover()
    return {"recovered": recovered, **runtime.queue.snapshot()}
