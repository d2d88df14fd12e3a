from fastapi import APIRouter, Depends
import logging

from flipforge.api.deps import get_runtime
from flipforge.runtime import PipelineRuntime
from flipforge.schemas.publish import PublishIn

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("")
async def publish_listing(payload: PublishIn, runtime: PipelineRuntime = Depends(get_runtime)):
    """
    리스팅을 외부 채널에 게시합니다.
    지원하지 않는 플랫폼은 오류가 아니라 success=false 결과로 응답합니다.
    """
    result = await runtime.publisher.publish(payload.platform, payload.data)
    if result.success:
        logger.info(f"[PUBLISH] Published to {payload.platform}: product={result.productId}")
    return {"success": True, "data": result.model_dump(exclude_none=True)}
