"""
읽기 경로 결과 타입.

"아직 생성되지 않음"(Partial)과 "상품 없음"(NotFound)을 호출자가 혼동하지
않도록 읽기 API 는 항상 Ok | NotFound | Partial 중 하나를 반환합니다.
"""
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union
import uuid

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    data: T


@dataclass(frozen=True)
class NotFound:
    product_id: uuid.UUID

    @property
    def message(self) -> str:
        return f"Product not found: {self.product_id}"


@dataclass(frozen=True)
class Partial(Generic[T]):
    data: T
    missing: frozenset[str] = field(default_factory=frozenset)


ReadResult = Union[Ok[T], NotFound, Partial[T]]


def ok_or_partial(data: Any, missing: set[str] | frozenset[str]) -> "Ok[Any] | Partial[Any]":
    if missing:
        return Partial(data=data, missing=frozenset(missing))
    return Ok(data=data)
