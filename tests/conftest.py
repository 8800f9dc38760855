import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

# Ensure the project sources are importable without an editable install.
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from aura.library import AURA_SCHEMA, Bookshelf  # noqa: E402
from aura.storage import (  # noqa: E402
    CollectionDescriptor,
    IndexDescriptor,
    ObjectStoreEngine,
    SchemaDescriptor,
    Store,
)


@pytest.fixture
def engine():
    engine = ObjectStoreEngine()
    yield engine
    engine.shutdown()


@pytest.fixture
def sample_schema() -> SchemaDescriptor:
    """Three plain collections plus an auto-keyed one with two indexes."""

    return SchemaDescriptor(
        name="sample",
        version=1,
        collections=(
            CollectionDescriptor("a", "id"),
            CollectionDescriptor("b", "id"),
            CollectionDescriptor("c", "id"),
            CollectionDescriptor(
                "items",
                "id",
                auto_key=True,
                indexes=(
                    IndexDescriptor("group", "group"),
                    IndexDescriptor("code", "code", unique=True),
                ),
            ),
        ),
    )


@pytest.fixture
def sample_store(engine, sample_schema) -> Store:
    return Store(engine, sample_schema)


@pytest.fixture
def store(engine) -> Store:
    return Store(engine, AURA_SCHEMA)


@pytest.fixture
def shelf(store) -> Bookshelf:
    return Bookshelf(store)
