from __future__ import annotations

import pytest

from app.db.models import SearchCredential
from app.services.search.credentials import DatabaseCredentialResolver
from app.services.search.errors import CredentialDecryptionError, CredentialNotFoundError


class _SessionStub:
    def __init__(self, rows: dict[int, SearchCredential]) -> None:
        self._rows = rows

    async def get(self, model, row_id):
        assert model is SearchCredential
        return self._rows.get(row_id)


async def test_resolve_returns_trimmed_credentials() -> None:
    session = _SessionStub({3: SearchCredential(id=3, label="main", api_key=" key ", engine_id="cx\n")})

    credentials = await DatabaseCredentialResolver().resolve(session, 3)

    assert credentials.api_key == "key"
    assert credentials.engine_id == "cx"
    assert repr(credentials) == "SearchCredentials(api_key='***', engine_id='***')"


async def test_resolve_missing_credential_raises_not_found() -> None:
    with pytest.raises(CredentialNotFoundError) as exc_info:
        await DatabaseCredentialResolver().resolve(_SessionStub({}), 9)
    assert exc_info.value.credential_id == 9


async def test_resolve_blank_secret_is_unusable() -> None:
    session = _SessionStub({4: SearchCredential(id=4, label="broken", api_key="  ", engine_id="cx")})

    with pytest.raises(CredentialDecryptionError):
        await DatabaseCredentialResolver().resolve(session, 4)
