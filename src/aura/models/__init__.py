"""Shelf data models."""

from .types import Book, Chapter, ReaderSetting, ReadingProgress, TableOfContents, TocEntry

__all__ = ["Book", "Chapter", "ReaderSetting", "ReadingProgress", "TableOfContents", "TocEntry"]
