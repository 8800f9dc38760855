from __future__ import annotations

import pytest

from aura.errors import SchemaError
from aura.library import AURA_SCHEMA
from aura.storage import CollectionDescriptor, IndexDescriptor, SchemaDescriptor


def test_key_paths_are_normalized() -> None:
    collection = CollectionDescriptor("chapter", ["book_id", "id"], indexes=[IndexDescriptor("pair", ["a", "b"])])

    assert collection.key_path == ("book_id", "id")
    assert collection.indexes[0].path == ("a", "b")
    assert isinstance(collection.indexes, tuple)


def test_auto_key_requires_single_field_path() -> None:
    with pytest.raises(SchemaError):
        CollectionDescriptor("chapter", ("book_id", "id"), auto_key=True)


@pytest.mark.parametrize("path", ["", (), ("a", ""), ("a", 1)])
def test_invalid_key_paths_are_rejected(path) -> None:
    with pytest.raises(SchemaError):
        CollectionDescriptor("x", path)


def test_duplicate_names_are_rejected() -> None:
    with pytest.raises(SchemaError):
        CollectionDescriptor("x", "id", indexes=(IndexDescriptor("i", "a"), IndexDescriptor("i", "b")))
    with pytest.raises(SchemaError):
        SchemaDescriptor("s", 1, (CollectionDescriptor("x", "id"), CollectionDescriptor("x", "id")))


@pytest.mark.parametrize("version", [0, -1, True, "1"])
def test_version_must_be_positive_integer(version) -> None:
    with pytest.raises(SchemaError):
        SchemaDescriptor("s", version, ())


def test_lookup_helpers() -> None:
    assert AURA_SCHEMA.collection_names == ("book", "table_of_contents", "chapter", "reading_progress", "setting")
    assert AURA_SCHEMA.collection("chapter").index("chapter_id").unique is True
    with pytest.raises(SchemaError):
        AURA_SCHEMA.collection("missing")
    with pytest.raises(SchemaError):
        AURA_SCHEMA.collection("book").index("missing")


def test_from_mapping_accepts_nested_objects() -> None:
    schema = SchemaDescriptor.from_mapping(
        {
            "name": "Aura",
            "version": 2,
            "collections": {
                "book": {
                    "key_path": "id",
                    "auto_key": True,
                    "indexes": {"genre_id": {}, "hash": {"path": "hash", "unique": True}},
                },
                "chapter": {"key_path": ["book_id", "id"]},
            },
        }
    )

    book = schema.collection("book")
    assert schema.version == 2
    assert book.auto_key is True
    assert book.index("genre_id").path == "genre_id"
    assert book.index("hash").unique is True
    assert schema.collection("chapter").key_path == ("book_id", "id")


def test_from_mapping_accepts_lists() -> None:
    schema = SchemaDescriptor.from_mapping(
        {
            "name": "Aura",
            "version": 1,
            "collections": [{"name": "setting", "key_path": "id", "indexes": [{"name": "name", "unique": True}]}],
        }
    )

    assert schema.collection("setting").index("name").path == "name"


@pytest.mark.parametrize(
    "payload",
    [
        {"version": 1},
        {"name": "Aura", "version": 1, "collections": {"book": {}}},
        {"name": "Aura", "version": 1, "collections": [{"key_path": "id"}]},
    ],
)
def test_from_mapping_rejects_malformed_payloads(payload) -> None:
    with pytest.raises(SchemaError):
        SchemaDescriptor.from_mapping(payload)
