import logging
import asyncio
from typing import Callable, Dict, List, Any

logger = logging.getLogger(__name__)

PRODUCT_CHANGED = "product.changed"
PHASE_CHANGED = "phase.changed"
LOG_APPENDED = "log.appended"
CHANGE_EVENTS = (PRODUCT_CHANGED, PHASE_CHANGED, LOG_APPENDED)


class EventBus:
    """
    레코드 변경 통지용 경량 이벤트 버스.
    PipelineStore 가 커밋 후 emit 하고, SSE 스트림이 구독합니다.
    """
    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, handler: Callable):
        """이벤트 구독 등록"""
        if event_type not in self._handlers:
            self._handlers[event_type] = []
        self._handlers[event_type].append(handler)
        logger.debug(f"[EVENT] Subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable):
        """이벤트 구독 해제"""
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            logger.debug(f"[EVENT] Unsubscribed from {event_type}")

    def handler_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    def emit(self, event_type: str, data: Any):
        """
        동기 코드(스토어)에서 쓰는 발행.
        동기 핸들러는 즉시 호출하고, 비동기 핸들러는 실행 중인 루프에 태스크로 넘깁니다.
        """
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    if loop is None:
                        logger.debug(f"[EVENT] No running loop, skipped async handler for {event_type}")
                        continue
                    loop.create_task(handler(data))
                else:
                    handler(data)
            except Exception as e:
                logger.error(f"[EVENT] Error in handler for {event_type}: {e}")
