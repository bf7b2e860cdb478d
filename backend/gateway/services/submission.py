from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from gateway.models.generation import BillingStatus, GenerationRecord
from gateway.services.generations import GenerationsService
from gateway.services.pricing import CostResolution, resolve_cost
from gateway.services.providers import ProviderError, ProviderRegistry

logger = logging.getLogger(__name__)

PricingResolver = Callable[[str, str, Mapping[str, Any]], CostResolution]


@dataclass(frozen=True)
class SubmissionResult:
    generation_id: str
    provider_task_id: str
    # Pre-authorization estimate only; nothing is written to the ledger at submit.
    expected_debit: int
    sku: str
    pricing_version: str


def pricing_params(params: Mapping[str, Any], prompt: str | None) -> dict[str, Any]:
    values = dict(params)
    if prompt and not values.get("prompt"):
        values["prompt"] = prompt
    return values


class GenerationSubmissionService:
    def __init__(
        self,
        generations: GenerationsService,
        providers: ProviderRegistry,
        pricing: PricingResolver = resolve_cost,
    ):
        self.generations = generations
        self.providers = providers
        self.pricing = pricing

    def submit(
        self,
        user_id: str,
        provider: str,
        model: str,
        params: Mapping[str, Any],
        *,
        prompt: str | None = None,
        generation_type: str | None = None,
    ) -> SubmissionResult:
        provider_name = (provider or "").strip().lower()
        # Configuration and pricing problems surface before any state exists.
        adapter = self.providers.get(provider_name)
        estimate = self.pricing(provider_name, model, pricing_params(params, prompt))

        record: GenerationRecord = self.generations.create(
            user_id,
            provider_name,
            model,
            params,
            prompt=prompt,
            generation_type=generation_type,
        )
        try:
            task_id = adapter.submit(model, pricing_params(params, prompt))
        except ProviderError as exc:
            logger.warning(
                "Provider submit failed generation=%s provider=%s model=%s error=%s",
                record.id,
                provider_name,
                model,
                exc,
            )
            self.generations.mark_failed(record.id, str(exc), billing_status=BillingStatus.not_billable.value)
            raise

        self.generations.attach_provider_task(record.id, task_id)
        logger.info(
            "Generation submitted id=%s provider=%s task=%s expected_debit=%s",
            record.id,
            provider_name,
            task_id,
            estimate.cost,
        )
        return SubmissionResult(
            generation_id=record.id,
            provider_task_id=task_id,
            expected_debit=estimate.cost,
            sku=estimate.sku,
            pricing_version=estimate.pricing_version,
        )
