from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow import events
from leadflow.buyers import import_export, query
from leadflow.buyers.differ import TRACKED_FIELDS, compute_diff, creation_diff, render_diff, snapshot
from leadflow.buyers.models import Buyer, BuyerHistory, utcnow
from leadflow.buyers.policy import Caller, can_edit_buyer, can_view_buyer
from leadflow.buyers.schemas import (
    BuyerDetailRead,
    BuyerFilters,
    BuyerHistoryRead,
    BuyerInput,
    BuyerPage,
    BuyerRead,
    ImportResult,
)
from leadflow.buyers.validation import validate_create, validate_merged, validate_status, validate_update
from leadflow.core.config import get_settings
from leadflow.core.errors import (
    Conflict,
    Forbidden,
    LeadFlowError,
    NotFound,
    PersistenceFailure,
    RateLimited,
    Unauthenticated,
)
from leadflow.core.rate_limit import MutationRateLimiter
from leadflow.metrics import observe_buyer_mutation, observe_imported_rows, observe_rate_limit_rejection
from leadflow.otel import get_tracer

logger = logging.getLogger("leadflow.buyers")
tracer = get_tracer("leadflow.buyers")

RawPayload = BuyerInput | Mapping[str, Any]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def same_instant(left: datetime, right: datetime) -> bool:
    return _as_utc(left) == _as_utc(right)


def next_timestamp(previous: datetime | None) -> datetime:
    """A fresh ``updated_at`` that is strictly later than ``previous``."""
    now = utcnow()
    if previous is None:
        return now
    return max(now, _as_utc(previous) + timedelta(microseconds=1))


def _require_caller(caller: Caller | None) -> Caller:
    if caller is None or not caller.user_id:
        raise Unauthenticated()
    return caller


class BuyerService:
    entity_type = "buyers.buyer"

    def __init__(
        self,
        rate_limiter: MutationRateLimiter,
        *,
        page_size: int | None = None,
        history_limit: int | None = None,
        import_max_rows: int | None = None,
        import_max_bytes: int | None = None,
    ) -> None:
        settings = get_settings()
        self.rate_limiter = rate_limiter
        self.page_size = page_size or settings.buyers_page_size
        self.history_limit = history_limit or settings.buyers_history_limit
        self.import_max_rows = import_max_rows or settings.import_max_rows
        self.import_max_bytes = import_max_bytes or settings.import_max_bytes

    # -- mutations -------------------------------------------------------

    def create_buyer(self, session: Session, caller: Caller | None, raw: RawPayload) -> BuyerRead:
        caller = _require_caller(caller)
        with self._pipeline("create", caller) as fields:
            self._admit(caller, "create")
            dto = validate_create(raw)

            now = utcnow()
            buyer = Buyer(
                id=uuid.uuid4(),
                **dto.model_dump(),
                owner_id=caller.user_id,
                created_at=now,
                updated_at=now,
            )
            fields["buyer_id"] = str(buyer.id)
            with self._write_transaction(session):
                session.add(buyer)
                session.flush()
                session.add(
                    BuyerHistory(
                        buyer_id=buyer.id,
                        changed_by=caller.user_id,
                        changed_at=now,
                        diff=creation_diff(buyer),
                    )
                )

            self._publish("buyers.buyer.created", caller, {"buyer_id": str(buyer.id), "status": str(buyer.status)})
            return BuyerRead.model_validate(buyer)

    def update_buyer(
        self,
        session: Session,
        caller: Caller | None,
        buyer_id: uuid.UUID,
        raw: RawPayload,
    ) -> BuyerRead:
        caller = _require_caller(caller)
        with self._pipeline("update", caller, buyer_id=buyer_id) as fields:
            self._admit(caller, "update")
            dto = validate_update(raw)

            buyer = self._load(session, buyer_id)
            if not can_edit_buyer(caller, buyer.owner_id):
                raise Forbidden()
            if not same_instant(buyer.updated_at, dto.updated_at):
                raise Conflict()

            before = snapshot(buyer)
            merged: dict[str, Any] = {field: getattr(buyer, field) for field in TRACKED_FIELDS}
            merged.update(dto.changes())
            validate_merged(merged)

            diff = compute_diff(before, merged)
            fields["changed_fields"] = sorted(diff)
            if not diff:
                return BuyerRead.model_validate(buyer)

            stored_token = buyer.updated_at
            new_timestamp = next_timestamp(stored_token)
            with self._write_transaction(session):
                result = session.execute(
                    update(Buyer)
                    .where(Buyer.id == buyer.id, Buyer.updated_at == stored_token)
                    .values(**{field: merged[field] for field in diff}, updated_at=new_timestamp)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise Conflict()
                session.add(
                    BuyerHistory(
                        buyer_id=buyer.id,
                        changed_by=caller.user_id,
                        changed_at=new_timestamp,
                        diff=diff,
                    )
                )
            session.refresh(buyer)

            self._publish(
                "buyers.buyer.updated",
                caller,
                {"buyer_id": str(buyer.id), "changed_fields": sorted(diff)},
            )
            return BuyerRead.model_validate(buyer)

    def change_status(
        self,
        session: Session,
        caller: Caller | None,
        buyer_id: uuid.UUID,
        status: Any,
    ) -> BuyerRead:
        caller = _require_caller(caller)
        with self._pipeline("change_status", caller, buyer_id=buyer_id) as fields:
            self._admit(caller, "change_status")
            new_status = validate_status(status)

            buyer = self._load(session, buyer_id)
            if not can_edit_buyer(caller, buyer.owner_id):
                raise Forbidden()
            if buyer.status == new_status:
                fields["changed_fields"] = []
                return BuyerRead.model_validate(buyer)

            old_status = buyer.status
            new_timestamp = next_timestamp(buyer.updated_at)
            diff = {"status": [str(old_status), str(new_status)]}
            fields["changed_fields"] = ["status"]
            with self._write_transaction(session):
                buyer.status = new_status
                buyer.updated_at = new_timestamp
                session.add(
                    BuyerHistory(
                        buyer_id=buyer.id,
                        changed_by=caller.user_id,
                        changed_at=new_timestamp,
                        diff=diff,
                    )
                )
            session.refresh(buyer)

            self._publish(
                "buyers.buyer.status_changed",
                caller,
                {"buyer_id": str(buyer.id), "from": str(old_status), "to": str(new_status)},
            )
            return BuyerRead.model_validate(buyer)

    def import_buyers(self, session: Session, caller: Caller | None, content: bytes) -> ImportResult:
        caller = _require_caller(caller)
        with self._pipeline("import", caller) as fields:
            self._admit(caller, "import")
            payloads = import_export.read_import_rows(
                content,
                max_bytes=self.import_max_bytes,
                max_rows=self.import_max_rows,
            )
            fields["row_count"] = len(payloads)
            accepted = import_export.validate_import_rows(payloads)

            now = utcnow()
            buyers = [
                Buyer(
                    id=uuid.uuid4(),
                    **dto.model_dump(),
                    owner_id=caller.user_id,
                    created_at=now,
                    updated_at=now,
                )
                for dto in accepted
            ]
            with self._write_transaction(session):
                session.add_all(buyers)
                session.flush()
                session.add_all(
                    BuyerHistory(
                        buyer_id=buyer.id,
                        changed_by=caller.user_id,
                        changed_at=now,
                        diff=creation_diff(buyer),
                    )
                    for buyer in buyers
                )

            observe_imported_rows(len(buyers))
            self._publish("buyers.import.completed", caller, {"imported": len(buyers)})
            return ImportResult(
                imported=len(buyers),
                message=f"Successfully imported {len(buyers)} buyer leads.",
            )

    # -- reads -----------------------------------------------------------

    def get_buyer(self, session: Session, caller: Caller | None, buyer_id: uuid.UUID) -> BuyerRead:
        caller = _require_caller(caller)
        return BuyerRead.model_validate(self._load_visible(session, caller, buyer_id))

    def get_buyer_detail(self, session: Session, caller: Caller | None, buyer_id: uuid.UUID) -> BuyerDetailRead:
        caller = _require_caller(caller)
        buyer = self._load_visible(session, caller, buyer_id)
        return BuyerDetailRead(
            buyer=BuyerRead.model_validate(buyer),
            history=self._history(session, buyer.id, self.history_limit),
        )

    def list_history(
        self,
        session: Session,
        caller: Caller | None,
        buyer_id: uuid.UUID,
        limit: int | None = None,
    ) -> list[BuyerHistoryRead]:
        caller = _require_caller(caller)
        buyer = self._load_visible(session, caller, buyer_id)
        return self._history(session, buyer.id, limit or self.history_limit)

    def list_buyers(self, session: Session, caller: Caller | None, filters: BuyerFilters) -> BuyerPage:
        caller = _require_caller(caller)
        return query.list_buyers(session, caller, filters, page_size=self.page_size)

    def export_buyers(
        self,
        session: Session,
        caller: Caller | None,
        filters: BuyerFilters,
        *,
        today: date | None = None,
    ) -> tuple[str, str]:
        caller = _require_caller(caller)
        buyers = session.scalars(query.export_statement(caller, filters)).all()
        logger.info(
            "buyers.export",
            extra={"operation": "export", "actor_user_id": caller.user_id, "row_count": len(buyers)},
        )
        filename = import_export.export_filename(today or utcnow().date())
        return filename, import_export.render_export(buyers)

    # -- helpers ---------------------------------------------------------

    def _admit(self, caller: Caller, operation: str) -> None:
        allowed, retry_after = self.rate_limiter.take(caller.user_id)
        if not allowed:
            observe_rate_limit_rejection(operation)
            raise RateLimited(retry_after=retry_after)

    def _load(self, session: Session, buyer_id: uuid.UUID) -> Buyer:
        buyer = session.scalar(select(Buyer).where(Buyer.id == buyer_id))
        if buyer is None:
            raise NotFound()
        return buyer

    def _load_visible(self, session: Session, caller: Caller, buyer_id: uuid.UUID) -> Buyer:
        buyer = self._load(session, buyer_id)
        if not can_view_buyer(caller, buyer.owner_id):
            raise NotFound()
        return buyer

    def _history(self, session: Session, buyer_id: uuid.UUID, limit: int) -> list[BuyerHistoryRead]:
        rows = session.scalars(
            select(BuyerHistory)
            .where(BuyerHistory.buyer_id == buyer_id)
            .order_by(BuyerHistory.changed_at.desc(), BuyerHistory.id.desc())
            .limit(limit)
        ).all()
        return [
            BuyerHistoryRead(
                id=row.id,
                buyer_id=row.buyer_id,
                changed_by=row.changed_by,
                changed_at=row.changed_at,
                diff=row.diff,
                summary=render_diff(row.diff),
            )
            for row in rows
        ]

    @contextmanager
    def _write_transaction(self, session: Session) -> Iterator[None]:
        try:
            yield
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("buyers.persistence_failure", extra={"error": str(exc)[:500]})
            raise PersistenceFailure() from exc
        except Exception:
            session.rollback()
            raise

    @contextmanager
    def _pipeline(
        self,
        operation: str,
        caller: Caller,
        *,
        buyer_id: uuid.UUID | None = None,
    ) -> Iterator[dict[str, Any]]:
        fields: dict[str, Any] = {"operation": operation, "actor_user_id": caller.user_id}
        if buyer_id is not None:
            fields["buyer_id"] = str(buyer_id)
        started = time.perf_counter()
        outcome = "ok"

        with tracer.start_as_current_span(f"buyers.{operation}") as span:
            span.set_attribute("operation", operation)
            span.set_attribute("actor_user_id", caller.user_id)
            if caller.correlation_id:
                span.set_attribute("correlation_id", caller.correlation_id)
            try:
                yield fields
            except LeadFlowError as exc:
                outcome = exc.code.lower()
                fields["error"] = exc.message
                span.set_status(Status(StatusCode.ERROR, exc.code))
                raise
            except Exception as exc:
                outcome = "error"
                fields["error"] = str(exc)[:500]
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise
            finally:
                duration = time.perf_counter() - started
                if "buyer_id" in fields:
                    span.set_attribute("buyer_id", fields["buyer_id"])
                fields["outcome"] = outcome
                fields["duration_ms"] = round(duration * 1000, 2)
                observe_buyer_mutation(operation, outcome, duration)
                log = logger.info if outcome == "ok" else logger.warning
                log("buyers.mutation", extra=fields)

    def _publish(self, event_type: str, caller: Caller, payload: dict[str, Any]) -> None:
        events.publish(
            events.build_envelope(
                event_type,
                payload,
                actor_user_id=caller.user_id,
                correlation_id=caller.correlation_id,
            )
        )
