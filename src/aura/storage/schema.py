"""Static schema declarations for the object store.

A schema is pure data: named collections, each with a key path, an
auto-generated-key flag and its secondary indexes.  The migrator turns it
into collections during the engine's upgrade callback.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Tuple, Union

from ..errors import SchemaError

KeyPath = Union[str, Tuple[str, ...]]


def normalize_key_path(path: Union[str, Iterable[str]]) -> KeyPath:
    """Return *path* as a string or a tuple of strings (composite)."""

    if isinstance(path, str):
        if not path:
            raise SchemaError("Key path must not be empty")
        return path
    parts = tuple(path)
    if not parts or not all(isinstance(part, str) and part for part in parts):
        raise SchemaError(f"Invalid composite key path: {path!r}")
    return parts


@dataclass(frozen=True)
class IndexDescriptor:
    name: str
    path: KeyPath
    unique: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_key_path(self.path))


@dataclass(frozen=True)
class CollectionDescriptor:
    """Declaration of one collection.

    Attributes:
        name: Collection name, unique within the schema.
        key_path: Field (or tuple of fields) holding the primary key.
        auto_key: Whether the engine generates the key when it is absent.
            Only allowed with a single-field key path.
        indexes: Secondary indexes created alongside the collection.
    """

    name: str
    key_path: KeyPath
    auto_key: bool = False
    indexes: Tuple[IndexDescriptor, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.name:
            raise SchemaError("Collection name must not be empty")
        key_path = normalize_key_path(self.key_path)
        object.__setattr__(self, "key_path", key_path)
        object.__setattr__(self, "indexes", tuple(self.indexes))
        if self.auto_key and not isinstance(key_path, str):
            raise SchemaError(
                f"Collection {self.name!r}: auto-generated keys need a single-field key path"
            )
        names = [index.name for index in self.indexes]
        if len(names) != len(set(names)):
            raise SchemaError(f"Collection {self.name!r} declares duplicate index names")

    def index(self, name: str) -> IndexDescriptor:
        for index in self.indexes:
            if index.name == name:
                return index
        raise SchemaError(f"Collection {self.name!r} has no index {name!r}")


@dataclass(frozen=True)
class SchemaDescriptor:
    """A named, versioned set of collections."""

    name: str
    version: int
    collections: Tuple[CollectionDescriptor, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "collections", tuple(self.collections))
        if not isinstance(self.version, int) or isinstance(self.version, bool) or self.version < 1:
            raise SchemaError(f"Schema version must be a positive integer, got {self.version!r}")
        names = [collection.name for collection in self.collections]
        if len(names) != len(set(names)):
            raise SchemaError(f"Schema {self.name!r} declares duplicate collection names")

    @property
    def collection_names(self) -> Tuple[str, ...]:
        return tuple(collection.name for collection in self.collections)

    def collection(self, name: str) -> CollectionDescriptor:
        for collection in self.collections:
            if collection.name == name:
                return collection
        raise SchemaError(f"Schema {self.name!r} has no collection {name!r}")

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "SchemaDescriptor":
        """Build a schema from a JSON-style mapping.

        The accepted shape is::

            {"name": "Aura", "version": 1, "collections": {
                "book": {"key_path": "id", "auto_key": true,
                         "indexes": {"genre_id": {"path": "genre_id", "unique": false}}}}}

        ``collections`` and ``indexes`` may also be lists of objects carrying
        their own ``name``.
        """

        try:
            name = payload["name"]
            version = payload["version"]
            raw_collections = payload.get("collections", {})
        except (KeyError, TypeError) as exc:
            raise SchemaError(f"Malformed schema mapping: {exc}") from exc

        collections = []
        for collection_name, entry in _named_items(raw_collections):
            indexes = tuple(
                IndexDescriptor(
                    name=index_name,
                    path=index_entry.get("path", index_name),
                    unique=bool(index_entry.get("unique", False)),
                )
                for index_name, index_entry in _named_items(entry.get("indexes", {}))
            )
            if "key_path" not in entry:
                raise SchemaError(f"Collection {collection_name!r} is missing 'key_path'")
            collections.append(
                CollectionDescriptor(
                    name=collection_name,
                    key_path=entry["key_path"],
                    auto_key=bool(entry.get("auto_key", False)),
                    indexes=indexes,
                )
            )
        return cls(name=name, version=version, collections=tuple(collections))


def _named_items(raw: Any) -> Iterable[Tuple[str, Mapping[str, Any]]]:
    if isinstance(raw, Mapping):
        for key, entry in raw.items():
            yield entry.get("name", key), entry
        return
    for entry in raw:
        name: Optional[str] = entry.get("name")
        if not name:
            raise SchemaError(f"Schema entry without a name: {entry!r}")
        yield name, entry
