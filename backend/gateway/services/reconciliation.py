"""
Job reconciliation: turns a finished provider job into stored artifacts and
exactly one ledger debit.

The generation record id is the debit's idempotency key, so any number of
result fetches for the same record (client double-polls, retried sweeps,
concurrent workers) settle to a single charge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from gateway.core.config import settings
from gateway.models.generation import BillingStatus, GenerationRecord, GenerationStatus
from gateway.services.credits import CreditsService, LedgerOutcome
from gateway.services.generations import GenerationsService
from gateway.services.pricing import CostResolution, PricingError, resolve_cost
from gateway.services.providers import (
    ProviderError,
    ProviderRegistry,
    ProviderResult,
    ProviderStatus,
    ProviderUnavailableError,
)
from gateway.services.storage import StorageError, StorageUploader, artifact_file_name, artifact_key_prefix
from gateway.services.submission import PricingResolver, pricing_params

logger = logging.getLogger(__name__)


class GenerationNotReadyError(Exception):
    """The provider has not finished the job yet."""

    def __init__(self, generation_id: str, provider_status: str) -> None:
        super().__init__(f"Generation {generation_id} is not ready (provider status: {provider_status})")
        self.generation_id = generation_id
        self.provider_status = provider_status


@dataclass(frozen=True)
class StatusSnapshot:
    generation_id: str
    status: str
    provider_status: str | None


@dataclass(frozen=True)
class FetchResult:
    generation_id: str
    status: str
    images: list[dict[str, Any]] = field(default_factory=list)
    videos: list[dict[str, Any]] = field(default_factory=list)
    billed: bool = False
    billing_status: str = BillingStatus.pending.value
    cost: int | None = None
    error: str | None = None


@dataclass
class SweepSummary:
    scanned: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0


class GenerationReconciliationService:
    def __init__(
        self,
        generations: GenerationsService,
        credits: CreditsService,
        providers: ProviderRegistry,
        storage: StorageUploader,
        pricing: PricingResolver = resolve_cost,
    ):
        self.generations = generations
        self.credits = credits
        self.providers = providers
        self.storage = storage
        self.pricing = pricing

    # ------------------------------------------------------------------
    # Status poll
    # ------------------------------------------------------------------
    def poll_status(
        self,
        user_id: str,
        *,
        generation_id: str | None = None,
        provider_task_id: str | None = None,
        provider: str | None = None,
    ) -> StatusSnapshot:
        record = self.generations.locate(
            user_id,
            generation_id=generation_id,
            provider_task_id=provider_task_id,
            provider=provider,
        )
        if record.is_terminal or not record.provider_task_id:
            return StatusSnapshot(record.id, record.status, record.provider_status)

        adapter = self.providers.get(record.provider)
        provider_status = adapter.status(record.model, record.provider_task_id)
        if provider_status.value != record.provider_status:
            self.generations.record_provider_status(record.id, provider_status.value)
        return StatusSnapshot(record.id, record.status, provider_status.value)

    # ------------------------------------------------------------------
    # Result fetch
    # ------------------------------------------------------------------
    def fetch_result(
        self,
        user_id: str,
        *,
        generation_id: str | None = None,
        provider_task_id: str | None = None,
        provider: str | None = None,
    ) -> FetchResult:
        record = self.generations.locate(
            user_id,
            generation_id=generation_id,
            provider_task_id=provider_task_id,
            provider=provider,
        )
        if record.is_terminal:
            return self._snapshot(record)
        if not record.provider_task_id:
            raise GenerationNotReadyError(record.id, record.provider_status or "submitting")

        adapter = self.providers.get(record.provider)
        try:
            result = adapter.result(record.model, record.provider_task_id)
        except ProviderUnavailableError:
            raise
        except ProviderError as exc:
            # A malformed or rejected result will not improve on retry.
            logger.warning("Provider result unusable generation=%s error=%s", record.id, exc)
            failed = self.generations.mark_failed(record.id, str(exc))
            return self._snapshot(failed, billed=False)

        if result.status in (ProviderStatus.queued, ProviderStatus.in_progress):
            if result.status.value != record.provider_status:
                self.generations.record_provider_status(record.id, result.status.value)
            raise GenerationNotReadyError(record.id, result.status.value)

        if result.status == ProviderStatus.failed:
            logger.info("Provider reported failure generation=%s error=%s", record.id, result.error)
            failed = self.generations.mark_failed(record.id, result.error or "provider job failed")
            return self._snapshot(failed)

        if not result.artifacts:
            failed = self.generations.mark_failed(record.id, "provider result contained no artifacts")
            return self._snapshot(failed)

        try:
            images, videos = self._persist_artifacts(record, result)
        except StorageError as exc:
            logger.error("Artifact persistence failed generation=%s error=%s", record.id, exc)
            failed = self.generations.mark_failed(record.id, f"storage: {exc}")
            return self._snapshot(failed)
        self.generations.save_artifacts(record.id, images=images, videos=videos)

        try:
            resolution = self.pricing(record.provider, record.model, self._billing_params(record, result))
            self._debit(record, resolution)
        except Exception as exc:  # pylint: disable=broad-except
            if self.credits.has_confirmed_debit(record.user_id, record.id):
                # The debit committed before the error surfaced.
                logger.warning("Debit already confirmed generation=%s error=%s", record.id, exc)
                return self._complete_from_ledger(record)
            # The generation succeeded and its artifacts are stored. Keep them,
            # flag billing for manual settlement, and still deliver the content.
            kind = "pricing" if isinstance(exc, PricingError) else "ledger"
            logger.error(
                "Billing unresolved generation=%s user=%s provider=%s model=%s cause=%s error=%s",
                record.id,
                record.user_id,
                record.provider,
                record.model,
                kind,
                exc,
            )
            failed = self.generations.mark_failed(
                record.id,
                f"billing unresolved ({kind}): {exc}",
                billing_status=BillingStatus.unresolved.value,
            )
            return self._snapshot(failed, billed=False)

        completed = self.generations.mark_completed(
            record.id,
            billing_status=BillingStatus.billed.value,
            credits_charged=resolution.cost,
            pricing_version=resolution.pricing_version,
        )
        return self._snapshot(completed, billed=True)

    def settle_unresolved(self, user_id: str, generation_id: str) -> LedgerOutcome:
        """Operator action: re-run pricing and the debit for a record whose billing failed."""
        record = self.generations.get(user_id, generation_id)
        if record.billing_status == BillingStatus.billed.value:
            return LedgerOutcome.SKIPPED
        if record.billing_status != BillingStatus.unresolved.value:
            raise ValueError(f"Generation {generation_id} is not awaiting billing ({record.billing_status})")

        resolution = self.pricing(record.provider, record.model, self._billing_params(record, None))
        outcome = self._debit(record, resolution)
        self.generations.complete_settlement(
            record.id,
            credits_charged=resolution.cost,
            pricing_version=resolution.pricing_version,
        )
        logger.info("Settled generation=%s cost=%s outcome=%s", record.id, resolution.cost, outcome.value)
        return outcome

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------
    def sweep_stale(
        self,
        *,
        older_than_seconds: int | None = None,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> SweepSummary:
        age = settings.SWEEP_STALE_AFTER_SECONDS if older_than_seconds is None else older_than_seconds
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=age)
        records = self.generations.list_stale(cutoff, limit or settings.SWEEP_BATCH_SIZE)
        summary = SweepSummary(scanned=len(records))
        for record in records:
            try:
                outcome = self.fetch_result(record.user_id, generation_id=record.id)
            except GenerationNotReadyError:
                summary.pending += 1
                continue
            except Exception:  # pylint: disable=broad-except
                logger.exception("Sweep failed to reconcile generation=%s", record.id)
                summary.errors += 1
                continue
            if outcome.status == GenerationStatus.completed.value:
                summary.completed += 1
            else:
                summary.failed += 1
        logger.info(
            "Sweep finished scanned=%s completed=%s failed=%s pending=%s errors=%s",
            summary.scanned,
            summary.completed,
            summary.failed,
            summary.pending,
            summary.errors,
        )
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _persist_artifacts(
        self, record: GenerationRecord, result: ProviderResult
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        stored: dict[str, list[dict[str, Any]]] = {"image": [], "video": []}
        for kind, artifacts in (("image", result.images), ("video", result.videos)):
            prefix = artifact_key_prefix(record.user_id, kind, record.id)
            for index, artifact in enumerate(artifacts):
                saved = self.storage.persist(artifact.url, prefix, artifact_file_name(artifact.url, index, kind))
                stored[kind].append(
                    {
                        "url": saved.public_url,
                        "storage_key": saved.storage_key,
                        "source_url": artifact.url,
                    }
                )
        return stored["image"], stored["video"]

    def _billing_params(self, record: GenerationRecord, result: ProviderResult | None) -> dict[str, Any]:
        # Stored params win; echoed values only fill gaps.
        values: dict[str, Any] = dict(result.echoed) if result is not None else {}
        values.update(pricing_params(record.params or {}, record.prompt))
        return values

    def _debit(self, record: GenerationRecord, resolution: CostResolution) -> LedgerOutcome:
        meta = {
            **resolution.ledger_meta(),
            "history_id": record.id,
            "provider": record.provider,
            "model": record.model,
            "provider_task_id": record.provider_task_id,
        }
        return self.credits.debit_if_absent(
            record.user_id,
            record.id,
            resolution.cost,
            f"{record.provider}.queue.{resolution.family}",
            meta,
        )

    def _complete_from_ledger(self, record: GenerationRecord) -> FetchResult:
        entry = self.credits.get_entry(record.user_id, record.id)
        meta = entry.meta or {}
        completed = self.generations.mark_completed(
            record.id,
            billing_status=BillingStatus.billed.value,
            credits_charged=-entry.amount,
            pricing_version=meta.get("pricing_version"),
        )
        return self._snapshot(completed, billed=True)

    def _snapshot(self, record: GenerationRecord, billed: bool | None = None) -> FetchResult:
        if billed is None:
            billed = self.credits.has_confirmed_debit(record.user_id, record.id)
        return FetchResult(
            generation_id=record.id,
            status=record.status,
            images=list(record.images or []),
            videos=list(record.videos or []),
            billed=billed,
            billing_status=record.billing_status,
            cost=record.credits_charged,
            error=record.error,
        )
