from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import SearchCredential
from app.services.search.errors import CredentialDecryptionError, CredentialNotFoundError
from app.services.search.types import SearchCredentials


class CredentialResolver(Protocol):
    async def resolve(self, db_session: AsyncSession, credential_id: int) -> SearchCredentials: ...


class DatabaseCredentialResolver:
    """Reads provider credentials from ``search_credentials``.

    Values are stored as given; a row with a blank key or engine id cannot be
    used and is reported the same way an undecryptable secret would be.
    """

    async def resolve(self, db_session: AsyncSession, credential_id: int) -> SearchCredentials:
        credential = await db_session.get(SearchCredential, credential_id)
        if credential is None:
            raise CredentialNotFoundError(credential_id)
        api_key = (credential.api_key or "").strip()
        engine_id = (credential.engine_id or "").strip()
        if not api_key or not engine_id:
            raise CredentialDecryptionError(
                credential_id,
                f"Search credential {credential_id} has an empty api key or engine id.",
            )
        return SearchCredentials(api_key=api_key, engine_id=engine_id)
