"""
Pipeline Exception Classes

파이프라인 전 구간에서 쓰는 구조화된 예외 정의.
API 레이어는 PipelineError 하나만 잡아서 HTTP 상태 코드로 변환합니다.
"""
from typing import Optional, Dict, Any
from enum import Enum


class ErrorSeverity(Enum):
    """에러 심각도 레벨"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors

    Attributes:
        message: 에러 메시지 (원문 그대로 보존)
        error_code: 에러 코드
        severity: 에러 심각도
        context: 추가 컨텍스트 정보
        recoverable: 복구 가능 여부
    """
    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "recoverable": self.recoverable
        }


class ValidationError(PipelineError):
    """
    Input validation failures

    Attributes:
        field: 실패한 필드 이름
        actual_value: 실제 값
    """
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        actual_value: Optional[Any] = None,
        **kwargs
    ):
        context = {
            "field": field,
            "actual_value": str(actual_value) if actual_value is not None else None,
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            severity=ErrorSeverity.LOW,
            context=context,
            recoverable=False
        )
        self.field = field
        self.actual_value = actual_value


class ProductNotFoundError(PipelineError):
    status_code = 404

    def __init__(self, product_id: Any):
        super().__init__(
            message=f"Product not found: {product_id}",
            error_code="NOT_FOUND",
            severity=ErrorSeverity.LOW,
            context={"product_id": str(product_id)},
        )
        self.product_id = product_id


class InvalidTransitionError(PipelineError):
    """
    상태 머신 전이 조건 위반

    Attributes:
        stage: 대상 stage 번호 (상품 단위 전이면 None)
        operation: start, complete, fail, pause, resume, cancel, retry
        current_status: 전이 시도 시점에 관측된 상태
    """
    status_code = 409

    def __init__(
        self,
        message: str,
        product_id: Any = None,
        stage: Optional[int] = None,
        operation: Optional[str] = None,
        current_status: Optional[str] = None,
    ):
        super().__init__(
            message=message,
            error_code="INVALID_TRANSITION",
            severity=ErrorSeverity.LOW,
            context={
                "product_id": str(product_id) if product_id is not None else None,
                "stage": stage,
                "operation": operation,
                "current_status": current_status,
            },
            recoverable=True
        )
        self.stage = stage
        self.operation = operation
        self.current_status = current_status


class MissingUpstreamDataError(PipelineError):
    status_code = 409

    def __init__(self, message: str, product_id: Any = None, stage: Optional[int] = None, table_name: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="MISSING_UPSTREAM_DATA",
            severity=ErrorSeverity.MEDIUM,
            context={
                "product_id": str(product_id) if product_id is not None else None,
                "stage": stage,
                "table_name": table_name,
            },
            recoverable=True
        )
        self.table_name = table_name


class ProviderError(PipelineError):
    """
    External enrichment / publishing call failures

    message 는 벤더 응답을 그대로 보존합니다 (사람이 보고 조치할 수 있도록).

    Attributes:
        provider: 제공자 (openai, gemini, ollama, woocommerce)
        model: 사용된 모델
        status_code_upstream: 외부 API 의 HTTP 상태 코드
    """
    status_code = 502

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        status_code_upstream: Optional[int] = None,
        **kwargs
    ):
        context = {
            "provider": provider,
            "model": model,
            "status_code": status_code_upstream,
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="PROVIDER_ERROR",
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=True
        )
        self.provider = provider
        self.model = model
        self.status_code_upstream = status_code_upstream


class PublishError(ProviderError):
    def __init__(self, message: str, platform: Optional[str] = None, **kwargs):
        super().__init__(message, provider=platform, **kwargs)
        self.error_code = "PUBLISH_ERROR"
        self.platform = platform


class StoreError(PipelineError):
    """
    Database operation failures

    Attributes:
        table_name: 영향받은 테이블 이름
        operation: 수행하려던 작업 (insert, update, upsert, select, delete)
    """
    status_code = 500

    def __init__(
        self,
        message: str,
        table_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        context = {
            "table_name": table_name,
            "operation": operation
        }
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="STORE_ERROR",
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=False
        )
        self.table_name = table_name
        self.operation = operation


def wrap_exception(
    error: Exception,
    error_class: type = PipelineError,
    **kwargs
) -> PipelineError:
    """
    일반 예외를 구조화된 파이프라인 예외로 래핑

    이미 PipelineError 인 경우 그대로 반환하고, 그 외에는 원래 메시지를
    그대로 유지한 채 error_class 로 감쌉니다.
    """
    if isinstance(error, PipelineError):
        return error
    return error_class(str(error) or error.__class__.__name__, **kwargs)
