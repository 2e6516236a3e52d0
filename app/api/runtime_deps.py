from __future__ import annotations

from fastapi import Depends, Request

from app.services.queries.execution import PageExecutionService
from app.services.queries.lifecycle import CombinationLifecycleService
from app.services.queries.orchestrator import OrchestratorDispatcher
from app.services.search.client import LiveSearchProvider, SearchProvider
from app.services.search.credentials import CredentialResolver, DatabaseCredentialResolver


def get_search_provider() -> SearchProvider:
    return LiveSearchProvider()


def get_credential_resolver() -> CredentialResolver:
    return DatabaseCredentialResolver()


def get_lifecycle_service() -> CombinationLifecycleService:
    return CombinationLifecycleService()


def get_execution_service(
    provider: SearchProvider = Depends(get_search_provider),
    credential_resolver: CredentialResolver = Depends(get_credential_resolver),
) -> PageExecutionService:
    return PageExecutionService(provider=provider, credential_resolver=credential_resolver)


def get_dispatcher(request: Request) -> OrchestratorDispatcher:
    return request.app.state.orchestrator_dispatcher
