"""Shelf and reader operations built on the object store.

Every method prepares its records first and only then opens a transaction,
so no unit of work awaits anything but store operations.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from ..config import READER_SETTING_NAME
from ..errors import BookNotFoundError, ImportFailedError
from ..models import Book, Chapter, ReaderSetting, ReadingProgress, TableOfContents
from ..storage import OperationHandle, Store, TransactionMode
from ..utils.logging import get_logger
from .schema import BOOK, BOOK_COLLECTIONS, CHAPTER, READING_PROGRESS, SETTING, TABLE_OF_CONTENTS

logger = get_logger(__name__)


@dataclass
class BookImport:
    """A parsed book ready to be stored.

    ``contents`` defaults to one entry per chapter and ``progress`` to the
    first line of the first chapter.
    """

    book: Book
    chapters: List[Chapter]
    contents: Optional[TableOfContents] = None
    progress: ReadingProgress = field(default_factory=ReadingProgress)

    def __post_init__(self) -> None:
        if self.contents is None:
            self.contents = TableOfContents.for_chapters(self.chapters)


@dataclass
class OpenedBook:
    book: Book
    contents: TableOfContents
    progress: ReadingProgress

    @property
    def rate(self) -> float:
        return self.progress.rate(len(self.contents.contents))


class Bookshelf:
    """High-level shelf API used by the CLI and any other front end."""

    def __init__(self, store: Store):
        self._store = store

    @property
    def store(self) -> Store:
        return self._store

    # -- import -----------------------------------------------------------
    async def add_book(self, item: BookImport) -> int:
        """Store a book with its chapters, contents and progress atomically.

        Returns:
            The generated book id, also written to ``item`` and its parts.
        """

        book_record = item.book.to_record()
        chapter_records = [chapter.to_record() for chapter in item.chapters]
        contents_record = item.contents.to_record()
        progress_record = item.progress.to_record()

        async def work(ops: OperationHandle) -> int:
            book_id = await ops.add(BOOK, book_record)
            for record in chapter_records:
                record["book_id"] = book_id
            contents_record["book_id"] = book_id
            progress_record["book_id"] = book_id
            await ops.put_all(CHAPTER, chapter_records)
            await ops.add(TABLE_OF_CONTENTS, contents_record)
            await ops.put(READING_PROGRESS, progress_record)
            return book_id

        book_id = await self._store.execute(BOOK_COLLECTIONS, TransactionMode.READ_WRITE, work)

        item.book.id = book_id
        item.contents.book_id = book_id
        item.progress.book_id = book_id
        for chapter in item.chapters:
            chapter.book_id = book_id
        logger.info("Added %r as book %d with %d chapter(s)", item.book.title, book_id, len(item.chapters))
        return book_id

    async def add_books(self, items: Sequence[BookImport]) -> Tuple[List[int], List[ImportFailedError]]:
        """Import several books, each in its own transaction.

        One failing book does not prevent the others from being stored.

        Returns:
            The ids of the stored books and one error per failed import.
        """

        outcomes = await asyncio.gather(*(self.add_book(item) for item in items), return_exceptions=True)
        stored: List[int] = []
        failures: List[ImportFailedError] = []
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, Exception):
                failure = ImportFailedError(item.book.title, outcome)
                logger.error("%s", failure)
                failures.append(failure)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                stored.append(outcome)
        return stored, failures

    # -- shelf ------------------------------------------------------------
    async def delete_book(self, book_id: int) -> int:
        """Remove a book and everything it owns.

        Returns:
            The number of chapters removed.

        Raises:
            BookNotFoundError: If no book has *book_id*.
        """

        async def work(ops: OperationHandle) -> int:
            if await ops.get_by_key(BOOK, book_id) is None:
                raise BookNotFoundError(f"No book with id {book_id}")
            _, chapters, _, _ = await asyncio.gather(
                ops.delete_by_key(BOOK, book_id),
                ops.delete_all_by_index(CHAPTER, "book_id", book_id),
                ops.delete_by_key(TABLE_OF_CONTENTS, book_id),
                ops.delete_by_key(READING_PROGRESS, book_id),
            )
            return chapters

        chapters = await self._store.execute(BOOK_COLLECTIONS, TransactionMode.READ_WRITE, work)
        logger.info("Deleted book %d and %d chapter(s)", book_id, chapters)
        return chapters

    async def clear(self) -> None:
        """Empty the shelf.  Reader settings are kept."""

        def work(ops: OperationHandle):
            return asyncio.gather(*(ops.clear(name) for name in BOOK_COLLECTIONS))

        await self._store.execute(BOOK_COLLECTIONS, TransactionMode.READ_WRITE, work)
        logger.info("Cleared the bookshelf")

    async def books(self) -> List[Book]:
        return [Book.from_record(record) for record in await self._store.get_all(BOOK)]

    async def books_in_genre(self, genre_id: int) -> List[Book]:
        records = await self._store.get_all_by_index(BOOK, "genre_id", genre_id)
        return [Book.from_record(record) for record in records]

    async def book_count(self) -> int:
        return await self._store.count(BOOK)

    async def find_by_hash(self, content_hash: str) -> Optional[Book]:
        record = await self._store.get_by_index(BOOK, "hash", content_hash)
        return Book.from_record(record) if record else None

    # -- reader -----------------------------------------------------------
    async def open_book(self, book_id: int) -> OpenedBook:
        """Load a book with its contents and progress in one read.

        Raises:
            BookNotFoundError: If no book has *book_id*.
        """

        def work(ops: OperationHandle):
            return asyncio.gather(
                ops.get_by_key(BOOK, book_id),
                ops.get_by_key(TABLE_OF_CONTENTS, book_id),
                ops.get_by_key(READING_PROGRESS, book_id),
            )

        book, contents, progress = await self._store.execute(
            (BOOK, TABLE_OF_CONTENTS, READING_PROGRESS), TransactionMode.READ_ONLY, work
        )
        if book is None:
            raise BookNotFoundError(f"No book with id {book_id}")
        return OpenedBook(
            book=Book.from_record(book),
            contents=TableOfContents.from_record(contents) if contents else TableOfContents(book_id=book_id),
            progress=ReadingProgress.from_record(progress) if progress else ReadingProgress(book_id=book_id),
        )

    async def load_chapter(self, book_id: int, index: int) -> Optional[Chapter]:
        record = await self._store.get_by_index(CHAPTER, "chapter_id", [book_id, index])
        return Chapter.from_record(record) if record else None

    async def chapters(self, book_id: int) -> List[Chapter]:
        records = await self._store.get_all_by_index(CHAPTER, "book_id", book_id)
        return sorted((Chapter.from_record(record) for record in records), key=lambda chapter: chapter.index)

    async def save_progress(self, progress: ReadingProgress) -> None:
        if progress.book_id is None:
            raise ValueError("Reading progress needs a book_id")
        await self._store.put(READING_PROGRESS, progress.to_record())

    async def load_reader_setting(self) -> ReaderSetting:
        record = await self._store.get_by_index(SETTING, "name", READER_SETTING_NAME)
        return ReaderSetting.from_record(record) if record else ReaderSetting()

    async def save_reader_setting(self, setting: ReaderSetting) -> None:
        await self._store.put(SETTING, setting.to_record())

    async def reset_reader_setting(self) -> bool:
        """Forget the stored reader setting; returns whether one existed."""
        return await self._store.delete_by_index(SETTING, "name", READER_SETTING_NAME)
