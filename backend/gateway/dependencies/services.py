from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from gateway.core.database import Transactor, get_transactor
from gateway.services.credits import CreditsService
from gateway.services.fal_client import FalClient
from gateway.services.generations import GenerationsService
from gateway.services.plans import PlansService
from gateway.services.providers import ProviderRegistry
from gateway.services.redeem_codes import RedeemCodesService
from gateway.services.reconciliation import GenerationReconciliationService
from gateway.services.replicate_client import ReplicateClient
from gateway.services.runway_client import RunwayClient
from gateway.services.storage import StorageUploader
from gateway.services.submission import GenerationSubmissionService


def build_provider_registry() -> ProviderRegistry:
    return ProviderRegistry(
        {
            "fal": FalClient,
            "replicate": ReplicateClient,
            "runway": RunwayClient,
        }
    )


@lru_cache(maxsize=1)
def get_provider_registry() -> ProviderRegistry:
    return build_provider_registry()


@lru_cache(maxsize=1)
def get_storage_uploader() -> StorageUploader:
    return StorageUploader()


def get_credits_service(transactor: Transactor = Depends(get_transactor)) -> CreditsService:
    return CreditsService(transactor)


def get_plans_service(credits: CreditsService = Depends(get_credits_service)) -> PlansService:
    return PlansService(credits)


def get_redeem_codes_service(plans: PlansService = Depends(get_plans_service)) -> RedeemCodesService:
    return RedeemCodesService(plans)


def get_generations_service(transactor: Transactor = Depends(get_transactor)) -> GenerationsService:
    return GenerationsService(transactor)


def get_submission_service(
    generations: GenerationsService = Depends(get_generations_service),
    providers: ProviderRegistry = Depends(get_provider_registry),
) -> GenerationSubmissionService:
    return GenerationSubmissionService(generations, providers)


def get_reconciliation_service(
    generations: GenerationsService = Depends(get_generations_service),
    credits: CreditsService = Depends(get_credits_service),
    providers: ProviderRegistry = Depends(get_provider_registry),
    storage: StorageUploader = Depends(get_storage_uploader),
) -> GenerationReconciliationService:
    return GenerationReconciliationService(generations, credits, providers, storage)
