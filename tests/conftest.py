"""Shared pytest fixtures for InboxSync tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402

from helpers import COMPANY_ID, INSTANCE, FakeSession, InMemoryStore, connected, make_gateway  # noqa: E402
from inboxsync.domain.run import RunContext  # noqa: E402
from inboxsync.domain.settings import SyncSettings  # noqa: E402


@pytest.fixture(autouse=True)
def _no_retry_delay(monkeypatch):
    """Gateway retries sleep between attempts; tests don't need to wait."""
    monkeypatch.setattr("inboxsync.whatsapp.evolution_client.RETRY_DELAY", 0)


@pytest.fixture(autouse=True)
def _reset_media_storage():
    """The media storage backend is a process-wide singleton."""
    from inboxsync.infra.storage import reset_media_storage

    reset_media_storage()
    yield
    reset_media_storage()


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_instance(INSTANCE, COMPANY_ID)
    return store


@pytest.fixture
def session():
    session = FakeSession()
    connected(session)
    return session


@pytest.fixture
def gateway(session):
    return make_gateway(session)


@pytest.fixture
def settings():
    return SyncSettings()


@pytest.fixture
def ctx():
    return RunContext(company_id=COMPANY_ID, instance_name=INSTANCE)


@pytest.fixture
def dry_ctx():
    return RunContext(company_id=COMPANY_ID, instance_name=INSTANCE, dry_run=True)
