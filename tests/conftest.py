from __future__ import annotations

import pytest

from newsstack_gpw.store_sqlite import SqliteStore

from helpers import seed_reference


@pytest.fixture
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "state.db"))
    yield s
    s.close()


@pytest.fixture
def seeded_store(store):
    return seed_reference(store)
