from __future__ import annotations

from pathlib import Path

import httpx
import pytest

from timecheck_sync.credentials import StaticCredentialProvider
from timecheck_sync.engine import SyncEngine
from timecheck_sync.recorder import MutationRecorder
from timecheck_sync.remote import RemoteAuthority
from timecheck_sync.store import LocalStore

from .authority import create_authority_app
from .fakes import FakeClock

OWNER = "user@example.com"
TOKEN = "secret"
BASE_URL = "http://timecheck.test"


@pytest.fixture()
def store(tmp_path: Path) -> LocalStore:
    local = LocalStore(f"sqlite:///{tmp_path / 'timecheck.db'}")
    yield local
    local.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def recorder(store: LocalStore, clock: FakeClock) -> MutationRecorder:
    return MutationRecorder(store, OWNER, clock=clock)


@pytest.fixture()
def authority_app():
    return create_authority_app({TOKEN: OWNER})


@pytest.fixture()
def authority(authority_app):
    """Server-side state of the reference authority."""
    return authority_app.state.authority


@pytest.fixture()
def remote(authority_app) -> RemoteAuthority:
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=authority_app), base_url=BASE_URL)
    return RemoteAuthority(BASE_URL, client=client)


@pytest.fixture()
def engine(store: LocalStore, remote: RemoteAuthority) -> SyncEngine:
    return SyncEngine(store, remote, StaticCredentialProvider(TOKEN))


def mock_remote(handler) -> RemoteAuthority:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return RemoteAuthority(BASE_URL, client=client)
