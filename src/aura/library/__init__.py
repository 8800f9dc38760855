"""Bookshelf built on the object store."""

from .bookshelf import Bookshelf, BookImport, OpenedBook
from .schema import AURA_SCHEMA, BOOK_COLLECTIONS

__all__ = ["AURA_SCHEMA", "BOOK_COLLECTIONS", "BookImport", "Bookshelf", "OpenedBook"]
