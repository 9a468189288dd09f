import pytest

from inboxcache.config import InboxConfig
from inboxcache.query import Inbox
from inboxcache.reconciler import Reconciler
from inboxcache.store import open_store


@pytest.fixture
def cfg(tmp_path):
    """Config rooted in a temp dir; nothing is written outside it."""
    return InboxConfig.for_dir(tmp_path / ".inbox", app_key="test")


@pytest.fixture
def store(cfg):
    handle = open_store(cfg)
    yield handle
    handle.close()


@pytest.fixture
def inbox(store):
    return Inbox(store)


@pytest.fixture
def reconciler(store, cfg):
    return Reconciler(store, cfg)
