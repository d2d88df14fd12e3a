"""
PipelineStore: 파이프라인 레코드에 대한 타입 있는 읽기/쓰기/업서트.

- 모든 호출은 자체 세션/트랜잭션을 사용합니다 (요청 간 세션 공유 없음).
- 상태 전이는 transition_phase / update_product 의 조건부 UPDATE(compare-and-swap)로만
  수행합니다. 읽고 나서 쓰는 방식은 사용하지 않습니다.
- 커밋이 끝난 뒤 EventBus 로 변경 통지를 보냅니다.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Optional
import logging
import uuid

from sqlalchemy import delete, select, text, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased
from sqlalchemy.sql import func
from sqlalchemy.sql.expression import ClauseElement

from flipforge.models import (
    STAGE_NAMES,
    MarketResearchData,
    PipelineLog,
    PipelinePhase,
    Product,
    ProductAnalysisData,
    ProductImage,
    ProductListingData,
    SeoAnalysisData,
)
from flipforge.services.events import EventBus, LOG_APPENDED, PHASE_CHANGED, PRODUCT_CHANGED
from flipforge.services.exceptions import ProductNotFoundError, StoreError, wrap_exception

logger = logging.getLogger(__name__)

# 상품 삭제 시 함께 지우는 하위 테이블 (SQLite 는 FK CASCADE 를 강제하지 않음)
PRODUCT_CHILD_TABLES = (
    MarketResearchData,
    SeoAnalysisData,
    ProductListingData,
    ProductAnalysisData,
    PipelinePhase,
    PipelineLog,
    ProductImage,
)


class PipelineStore:
    def __init__(self, session_factory: Callable[[], Session], events: Optional[EventBus] = None):
        self._session_factory = session_factory
        self.events = events or EventBus()

    @contextmanager
    def _transaction(self, operation: str, table_name: str) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error(f"[STORE] {operation} on {table_name} failed: {e}")
            raise wrap_exception(e, StoreError, table_name=table_name, operation=operation) from e

    def ping(self) -> bool:
        with self._transaction("select", "health") as session:
            return session.execute(text("SELECT 1")).scalar_one() == 1

    # ------------------------------------------------------------------
    # products
    # ------------------------------------------------------------------
    def create_product(self, name: str, **fields: Any) -> Product:
        """상품과 4개의 stage 행을 한 트랜잭션으로 생성 (stage 1 만 can_start)."""
        with self._transaction("insert", "products") as session:
            product = Product(name=name, status="uploaded", current_stage=1, **fields)
            session.add(product)
            session.flush()
            for stage, stage_name in STAGE_NAMES.items():
                session.add(
                    PipelinePhase(
                        product_id=product.id,
                        stage_number=stage,
                        stage_name=stage_name,
                        status="pending",
                        can_start=(stage == 1),
                        progress_percentage=0,
                        retry_count=0,
                    )
                )
            session.flush()
            session.refresh(product)
        self.events.emit(PRODUCT_CHANGED, {"productId": str(product.id), "status": product.status})
        return product

    def get_product(self, product_id: uuid.UUID) -> Optional[Product]:
        with self._transaction("select", "products") as session:
            return session.get(Product, product_id)

    def require_product(self, product_id: uuid.UUID) -> Product:
        product = self.get_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)
        return product

    def update_product(
        self,
        product_id: uuid.UUID,
        values: dict[str, Any],
        expected_statuses: Optional[Iterable[str]] = None,
    ) -> bool:
        """상품 행 조건부 갱신. expected_statuses 가 있으면 해당 상태일 때만 갱신."""
        stmt = update(Product).where(Product.id == product_id)
        if expected_statuses is not None:
            stmt = stmt.where(Product.status.in_(list(expected_statuses)))
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        with self._transaction("update", "products") as session:
            changed = session.execute(stmt).rowcount == 1

        if changed:
            self.events.emit(PRODUCT_CHANGED, {"productId": str(product_id), **_jsonable(values)})
        return changed

    def fill_empty_product_fields(self, product_id: uuid.UUID, values: dict[str, Any]) -> list[str]:
        """비어 있는 컬럼만 채웁니다. 채운 컬럼 이름 목록을 반환."""
        filled: list[str] = []
        with self._transaction("update", "products") as session:
            product = session.get(Product, product_id, with_for_update=True)
            if product is None:
                raise ProductNotFoundError(product_id)
            for key, value in values.items():
                if value in (None, "", [], {}):
                    continue
                if getattr(product, key) in (None, "", [], {}):
                    setattr(product, key, value)
                    filled.append(key)
        if filled:
            self.events.emit(PRODUCT_CHANGED, {"productId": str(product_id), "filled": filled})
        return filled

    def list_products(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> list[Product]:
        stmt = select(Product).order_by(Product.created_at.desc()).limit(limit).offset(offset)
        if status:
            stmt = stmt.where(Product.status == status)
        with self._transaction("select", "products") as session:
            return list(session.scalars(stmt).all())

    def count_products_by_status(self) -> dict[str, int]:
        stmt = select(Product.status, func.count(Product.id)).group_by(Product.status)
        with self._transaction("select", "products") as session:
            return {status: count for status, count in session.execute(stmt).all()}

    def count_published_listings(self) -> int:
        stmt = select(func.count(ProductListingData.id)).where(ProductListingData.publishing_status == "published")
        with self._transaction("select", "product_listing_data") as session:
            return session.execute(stmt).scalar_one()

    def delete_products(self, product_ids: Iterable[uuid.UUID]) -> list[dict[str, Any]]:
        """
        상품과 하위 행을 한 트랜잭션으로 삭제.
        하나라도 없으면 아무것도 지우지 않고 ProductNotFoundError.
        """
        ids = list(dict.fromkeys(product_ids))
        with self._transaction("delete", "products") as session:
            rows = session.execute(select(Product.id, Product.name).where(Product.id.in_(ids))).all()
            found = {row.id: row.name for row in rows}
            missing = [pid for pid in ids if pid not in found]
            if missing:
                raise ProductNotFoundError(missing[0])
            for model_cls in PRODUCT_CHILD_TABLES:
                session.execute(
                    delete(model_cls)
                    .where(model_cls.product_id.in_(ids))
                    .execution_options(synchronize_session=False)
                )
            session.execute(delete(Product).where(Product.id.in_(ids)).execution_options(synchronize_session=False))

        deleted = [{"id": str(pid), "name": found[pid]} for pid in ids]
        for item in deleted:
            self.events.emit(PRODUCT_CHANGED, {"productId": item["id"], "deleted": True})
        logger.info(f"[STORE] Deleted {len(deleted)} product(s) and their pipeline rows")
        return deleted

    # ------------------------------------------------------------------
    # pipeline phases
    # ------------------------------------------------------------------
    def list_phases(self, product_id: uuid.UUID) -> list[PipelinePhase]:
        stmt = (
            select(PipelinePhase)
            .where(PipelinePhase.product_id == product_id)
            .order_by(PipelinePhase.stage_number.asc())
        )
        with self._transaction("select", "pipeline_phases") as session:
            return list(session.scalars(stmt).all())

    def get_phase(self, product_id: uuid.UUID, stage: int) -> Optional[PipelinePhase]:
        stmt = select(PipelinePhase).where(
            PipelinePhase.product_id == product_id,
            PipelinePhase.stage_number == stage,
        )
        with self._transaction("select", "pipeline_phases") as session:
            return session.scalars(stmt).first()

    def find_phase(self, product_id: uuid.UUID, statuses: Iterable[str]) -> Optional[PipelinePhase]:
        stmt = (
            select(PipelinePhase)
            .where(
                PipelinePhase.product_id == product_id,
                PipelinePhase.status.in_(list(statuses)),
            )
            .order_by(PipelinePhase.stage_number.asc())
        )
        with self._transaction("select", "pipeline_phases") as session:
            return session.scalars(stmt).first()

    def transition_phase(
        self,
        product_id: uuid.UUID,
        stage: int,
        from_statuses: Iterable[str],
        values: dict[str, Any],
        *,
        require_can_start: bool = False,
        require_previous_completed: bool = False,
        require_no_running: bool = False,
    ) -> bool:
        """
        Compare-and-swap 상태 전이.

        WHERE 절에 전제 조건을 모두 넣은 단일 UPDATE 로 실행하고, 정확히 1행이
        바뀌었을 때만 True 를 반환합니다. 동시에 두 요청이 같은 전이를 시도해도
        한쪽만 성공합니다.
        """
        stmt = update(PipelinePhase).where(
            PipelinePhase.product_id == product_id,
            PipelinePhase.stage_number == stage,
            PipelinePhase.status.in_(list(from_statuses)),
        )
        if require_can_start:
            stmt = stmt.where(PipelinePhase.can_start.is_(True))
        if require_previous_completed and stage > 1:
            previous = aliased(PipelinePhase)
            stmt = stmt.where(
                select(previous.id)
                .where(
                    previous.product_id == product_id,
                    previous.stage_number == stage - 1,
                    previous.status == "completed",
                )
                .exists()
            )
        if require_no_running:
            other = aliased(PipelinePhase)
            stmt = stmt.where(
                ~select(other.id)
                .where(other.product_id == product_id, other.status == "running")
                .exists()
            )
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        with self._transaction("update", "pipeline_phases") as session:
            changed = session.execute(stmt).rowcount == 1

        if changed:
            self.events.emit(
                PHASE_CHANGED,
                {"productId": str(product_id), "stage": stage, **_jsonable(values)},
            )
        return changed

    def set_progress(self, product_id: uuid.UUID, stage: int, value: int) -> bool:
        """running 상태인 stage 의 진행률만 갱신합니다."""
        return self.transition_phase(
            product_id,
            stage,
            ("running",),
            {"progress_percentage": max(0, min(100, int(value)))},
        )

    def eligible_pending_stages(self, min_stage: int = 2) -> list[tuple[uuid.UUID, int]]:
        """processing 상태 상품 중 can_start=true 로 대기 중인 stage 목록 (복구용)."""
        stmt = (
            select(PipelinePhase.product_id, PipelinePhase.stage_number)
            .join(Product, Product.id == PipelinePhase.product_id)
            .where(
                Product.status == "processing",
                PipelinePhase.status == "pending",
                PipelinePhase.can_start.is_(True),
                PipelinePhase.stage_number >= min_stage,
            )
            .order_by(PipelinePhase.updated_at.asc())
        )
        with self._transaction("select", "pipeline_phases") as session:
            return [(row[0], row[1]) for row in session.execute(stmt).all()]

    # ------------------------------------------------------------------
    # images
    # ------------------------------------------------------------------
    def add_image(
        self,
        product_id: uuid.UUID,
        image_url: str,
        storage_path: str,
        *,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        mime_type: Optional[str] = None,
        is_primary: bool = False,
    ) -> ProductImage:
        with self._transaction("insert", "product_images") as session:
            image = ProductImage(
                product_id=product_id,
                image_url=image_url,
                storage_path=storage_path,
                file_name=file_name,
                file_size=file_size,
                mime_type=mime_type,
                is_primary=is_primary,
            )
            session.add(image)
        return image

    def list_images(self, product_id: uuid.UUID) -> list[ProductImage]:
        stmt = (
            select(ProductImage)
            .where(ProductImage.product_id == product_id)
            .order_by(ProductImage.is_primary.desc(), ProductImage.created_at.asc())
        )
        with self._transaction("select", "product_images") as session:
            return list(session.scalars(stmt).all())

    # ------------------------------------------------------------------
    # logs
    # ------------------------------------------------------------------
    def append_log(
        self,
        product_id: uuid.UUID,
        stage: int,
        message: str,
        *,
        level: str = "info",
        action: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> PipelineLog:
        with self._transaction("insert", "pipeline_logs") as session:
            row = PipelineLog(
                product_id=product_id,
                stage_number=stage,
                level=level,
                message=message,
                action=action,
                details=_jsonable(details) if details else None,
            )
            session.add(row)
        self.events.emit(
            LOG_APPENDED,
            {"productId": str(product_id), "stage": stage, "level": level, "message": message, "action": action},
        )
        return row

    def list_logs(self, product_id: uuid.UUID, limit: int = 100) -> list[PipelineLog]:
        """최신순 (append 순서의 역순)."""
        stmt = (
            select(PipelineLog)
            .where(PipelineLog.product_id == product_id)
            .order_by(PipelineLog.id.desc())
            .limit(limit)
        )
        with self._transaction("select", "pipeline_logs") as session:
            return list(session.scalars(stmt).all())

    def sweep_logs(self, older_than: datetime) -> int:
        """보관 기간이 지난 로그 삭제. 삭제한 행 수를 반환."""
        stmt = delete(PipelineLog).where(PipelineLog.created_at < older_than)
        with self._transaction("delete", "pipeline_logs") as session:
            deleted = session.execute(stmt).rowcount or 0
        logger.info(f"[STORE] Swept {deleted} pipeline logs older than {older_than.isoformat()}")
        return deleted

    # ------------------------------------------------------------------
    # stage outputs
    # ------------------------------------------------------------------
    def get_stage_output(self, model_cls: type, product_id: uuid.UUID) -> Any:
        stmt = select(model_cls).where(model_cls.product_id == product_id)
        with self._transaction("select", model_cls.__tablename__) as session:
            return session.scalars(stmt).first()

    def upsert_stage_output(self, model_cls: type, product_id: uuid.UUID, values: dict[str, Any]) -> Any:
        """product_id 기준 idempotent upsert."""
        table_name = model_cls.__tablename__
        with self._transaction("upsert", table_name) as session:
            dialect = session.get_bind().dialect.name
            insert_fn = postgresql.insert if dialect == "postgresql" else sqlite.insert
            payload = {"product_id": product_id, **values}
            stmt = insert_fn(model_cls).values(id=uuid.uuid4(), **payload)
            set_ = {key: stmt.excluded[key] for key in values}
            set_["updated_at"] = func.now()
            stmt = stmt.on_conflict_do_update(index_elements=[model_cls.product_id], set_=set_)
            session.execute(stmt)
            row = session.scalars(
                select(model_cls)
                .where(model_cls.product_id == product_id)
                .execution_options(populate_existing=True)
            ).one()
        self.events.emit(PRODUCT_CHANGED, {"productId": str(product_id), "table": table_name})
        return row


def _jsonable(values: Optional[dict[str, Any]]) -> dict[str, Any]:
    """이벤트/로그 details 에 넣을 수 있도록 datetime, UUID 를 문자열로 변환."""
    if not values:
        return {}
    out: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, ClauseElement):
            continue
        if isinstance(value, datetime):
            out[key] = value.isoformat()
        elif isinstance(value, uuid.UUID):
            out[key] = str(value)
        elif isinstance(value, dict):
            out[key] = _jsonable(value)
        else:
            out[key] = value
    return out
