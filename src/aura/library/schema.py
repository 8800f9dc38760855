"""Collections of the Aura shelf database."""

from __future__ import annotations

from typing import Final

from ..config import DATABASE_NAME, DATABASE_VERSION
from ..storage.schema import CollectionDescriptor, IndexDescriptor, SchemaDescriptor

BOOK: Final[str] = "book"
TABLE_OF_CONTENTS: Final[str] = "table_of_contents"
CHAPTER: Final[str] = "chapter"
READING_PROGRESS: Final[str] = "reading_progress"
SETTING: Final[str] = "setting"

# Everything a single book owns; deleted and cleared together.
BOOK_COLLECTIONS: Final[tuple] = (BOOK, CHAPTER, TABLE_OF_CONTENTS, READING_PROGRESS)

AURA_SCHEMA: Final[SchemaDescriptor] = SchemaDescriptor(
    name=DATABASE_NAME,
    version=DATABASE_VERSION,
    collections=(
        CollectionDescriptor(
            name=BOOK,
            key_path="id",
            auto_key=True,
            indexes=(
                IndexDescriptor("genre_id", "genre_id"),
                IndexDescriptor("hash", "hash", unique=True),
            ),
        ),
        CollectionDescriptor(name=TABLE_OF_CONTENTS, key_path="book_id"),
        CollectionDescriptor(
            name=CHAPTER,
            key_path=("book_id", "id"),
            indexes=(
                IndexDescriptor("book_id", "book_id"),
                IndexDescriptor("chapter_id", ("book_id", "index"), unique=True),
            ),
        ),
        CollectionDescriptor(name=READING_PROGRESS, key_path="book_id"),
        CollectionDescriptor(
            name=SETTING,
            key_path="id",
            indexes=(IndexDescriptor("name", "name", unique=True),),
        ),
    ),
)
