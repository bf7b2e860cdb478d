from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from gateway.core.database import Transactor, get_transactor
from gateway.models.generation import BillingStatus, GenerationRecord, GenerationStatus

logger = logging.getLogger(__name__)


class GenerationNotFoundError(Exception):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GenerationsService:
    """
    Data access for generation records. Only submission and reconciliation
    write through here; terminal records accept artifact URL backfill and
    billing settlement, nothing else.
    """

    MAX_PAGE_SIZE = 100

    def __init__(self, transactor: Transactor | None = None):
        self.transactor = transactor or get_transactor()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, user_id: str, generation_id: str) -> GenerationRecord:
        def _read(session: Session) -> GenerationRecord | None:
            record = session.get(GenerationRecord, generation_id)
            if record is None or record.user_id != user_id:
                return None
            return record

        record = self.transactor.run(_read)
        if record is None:
            raise GenerationNotFoundError(f"Generation {generation_id} not found")
        return record

    def find_by_provider_task_id(
        self,
        user_id: str,
        provider_task_id: str,
        provider: str | None = None,
    ) -> GenerationRecord | None:
        def _read(session: Session) -> GenerationRecord | None:
            stmt = select(GenerationRecord).where(
                GenerationRecord.user_id == user_id,
                GenerationRecord.provider_task_id == provider_task_id,
            )
            if provider:
                stmt = stmt.where(GenerationRecord.provider == provider)
            return session.execute(stmt.order_by(GenerationRecord.created_at.desc())).scalars().first()

        return self.transactor.run(_read)

    def locate(
        self,
        user_id: str,
        *,
        generation_id: str | None = None,
        provider_task_id: str | None = None,
        provider: str | None = None,
    ) -> GenerationRecord:
        if generation_id:
            return self.get(user_id, generation_id)
        if provider_task_id:
            record = self.find_by_provider_task_id(user_id, provider_task_id, provider)
            if record is None:
                raise GenerationNotFoundError(f"No generation for provider task {provider_task_id}")
            return record
        raise ValueError("generation_id or provider_task_id is required")

    def list(
        self,
        user_id: str,
        *,
        status: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[GenerationRecord]:
        normalized_limit = max(1, min(int(limit or 20), self.MAX_PAGE_SIZE))

        def _read(session: Session) -> list[GenerationRecord]:
            stmt = select(GenerationRecord).where(GenerationRecord.user_id == user_id)
            if status:
                stmt = stmt.where(GenerationRecord.status == status)
            stmt = stmt.order_by(GenerationRecord.created_at.desc()).offset(max(0, offset)).limit(normalized_limit)
            return list(session.execute(stmt).scalars())

        return self.transactor.run(_read)

    def list_stale(self, older_than: datetime, limit: int = 50) -> list[GenerationRecord]:
        """Records still generating, with a provider handle, created before `older_than`."""

        def _read(session: Session) -> list[GenerationRecord]:
            stmt = (
                select(GenerationRecord)
                .where(
                    GenerationRecord.status == GenerationStatus.generating.value,
                    GenerationRecord.provider_task_id.is_not(None),
                    GenerationRecord.created_at < older_than,
                )
                .order_by(GenerationRecord.created_at.asc())
                .limit(max(1, limit))
            )
            return list(session.execute(stmt).scalars())

        return self.transactor.run(_read)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(
        self,
        user_id: str,
        provider: str,
        model: str,
        params: Mapping[str, Any],
        *,
        prompt: str | None = None,
        generation_type: str | None = None,
    ) -> GenerationRecord:
        record = GenerationRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            status=GenerationStatus.generating.value,
            provider=provider,
            model=model,
            prompt=prompt,
            generation_type=generation_type,
            params=dict(params),
            images=[],
            videos=[],
            billing_status=BillingStatus.pending.value,
            created_at=_utcnow(),
        )

        def _tx(session: Session) -> GenerationRecord:
            session.add(record)
            session.flush()
            return record

        created = self.transactor.run(_tx)
        logger.info("Generation created id=%s user=%s provider=%s model=%s", created.id, user_id, provider, model)
        return created

    def attach_provider_task(self, generation_id: str, provider_task_id: str) -> GenerationRecord:
        def _apply(record: GenerationRecord) -> None:
            record.provider_task_id = provider_task_id

        return self._update(generation_id, _apply)

    def record_provider_status(self, generation_id: str, provider_status: str) -> GenerationRecord:
        def _apply(record: GenerationRecord) -> None:
            if not record.is_terminal:
                record.provider_status = provider_status

        return self._update(generation_id, _apply)

    def save_artifacts(
        self,
        generation_id: str,
        *,
        images: list[dict[str, Any]] | None = None,
        videos: list[dict[str, Any]] | None = None,
    ) -> GenerationRecord:
        def _apply(record: GenerationRecord) -> None:
            if record.is_terminal:
                return
            if images is not None:
                record.images = list(images)
            if videos is not None:
                record.videos = list(videos)

        return self._update(generation_id, _apply)

    def backfill_artifacts(
        self,
        generation_id: str,
        *,
        images: list[dict[str, Any]] | None = None,
        videos: list[dict[str, Any]] | None = None,
    ) -> GenerationRecord:
        """Swap artifact URLs on any record, terminal included. Never touches billing."""

        def _apply(record: GenerationRecord) -> None:
            if images is not None:
                record.images = list(images)
            if videos is not None:
                record.videos = list(videos)

        return self._update(generation_id, _apply)

    def mark_completed(
        self,
        generation_id: str,
        *,
        billing_status: str,
        credits_charged: int | None = None,
        pricing_version: str | None = None,
    ) -> GenerationRecord:
        def _apply(record: GenerationRecord) -> None:
            if record.is_terminal:
                logger.info("Generation %s already %s; completion ignored", record.id, record.status)
                return
            record.status = GenerationStatus.completed.value
            record.error = None
            record.billing_status = billing_status
            record.credits_charged = credits_charged
            record.pricing_version = pricing_version
            record.completed_at = _utcnow()

        return self._update(generation_id, _apply)

    def mark_failed(
        self,
        generation_id: str,
        error: str,
        *,
        billing_status: str = BillingStatus.not_billable.value,
    ) -> GenerationRecord:
        def _apply(record: GenerationRecord) -> None:
            if record.is_terminal:
                logger.info("Generation %s already %s; failure ignored", record.id, record.status)
                return
            record.status = GenerationStatus.failed.value
            record.error = (error or "generation failed")[:2000]
            record.billing_status = billing_status
            record.completed_at = _utcnow()

        return self._update(generation_id, _apply)

    def complete_settlement(
        self,
        generation_id: str,
        *,
        credits_charged: int,
        pricing_version: str | None = None,
    ) -> GenerationRecord:
        """
        Close out a record whose content was delivered but whose debit only
        landed at settlement. A record failed for billing alone becomes
        completed; any other record just has its billing fields updated.
        """

        def _apply(record: GenerationRecord) -> None:
            if (
                record.status == GenerationStatus.failed.value
                and record.billing_status == BillingStatus.unresolved.value
            ):
                record.status = GenerationStatus.completed.value
                record.error = None
            record.billing_status = BillingStatus.billed.value
            record.credits_charged = credits_charged
            if pricing_version is not None:
                record.pricing_version = pricing_version

        return self._update(generation_id, _apply)

    def _update(self, generation_id: str, apply: Callable[[GenerationRecord], None]) -> GenerationRecord:
        def _tx(session: Session) -> GenerationRecord:
            record = (
                session.execute(
                    select(GenerationRecord).where(GenerationRecord.id == generation_id).with_for_update()
                )
                .scalars()
                .first()
            )
            if record is None:
                raise GenerationNotFoundError(f"Generation {generation_id} not found")
            apply(record)
            session.flush()
            return record

        return self.transactor.run(_tx)
