"""Data models stored on the shelf."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

from ..config import DEFAULT_READER_SETTING, READER_THEMES


def _known(cls: type, record: Mapping[str, Any]) -> Dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in record.items() if key in names}


@dataclass(slots=True)
class Book:
    """Book metadata.  ``id`` stays ``None`` until the store generates it."""

    title: str
    name: str = ""
    hash: Optional[str] = None
    size: int = 0
    genre_id: int = 1
    created_time: int = 0
    id: Optional[int] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        if self.id is None:
            del record["id"]
        if self.hash is None:
            del record["hash"]
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Book":
        return cls(**_known(cls, record))


@dataclass(slots=True)
class Chapter:
    index: int
    title: str
    lines: List[str] = field(default_factory=list)
    start_line_number: int = 1
    end_line_number: int = 0
    book_id: Optional[int] = None
    id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.id is None:
            self.id = self.index

    @property
    def content(self) -> str:
        return "\n".join(self.lines)

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Chapter":
        return cls(**_known(cls, record))


@dataclass(slots=True)
class TocEntry:
    index: int
    title: str


@dataclass(slots=True)
class TableOfContents:
    contents: List[TocEntry] = field(default_factory=list)
    book_id: Optional[int] = None

    @classmethod
    def for_chapters(cls, chapters: List[Chapter]) -> "TableOfContents":
        return cls(contents=[TocEntry(index=chapter.index, title=chapter.title) for chapter in chapters])

    def to_record(self) -> Dict[str, Any]:
        return {
            "book_id": self.book_id,
            "contents": [{"index": entry.index, "title": entry.title} for entry in self.contents],
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "TableOfContents":
        return cls(
            contents=[TocEntry(index=item["index"], title=item["title"]) for item in record.get("contents", [])],
            book_id=record.get("book_id"),
        )


@dataclass(slots=True)
class ReadingProgress:
    """Where the reader left a book: chapter, line and scroll offset."""

    book_id: Optional[int] = None
    chapter_index: int = 1
    line_index: int = 1
    scroll_top: int = 0

    def rate(self, total_chapters: int) -> float:
        """Percentage of chapters reached, rounded to two decimals."""
        if total_chapters <= 0:
            return 0.0
        return round(self.chapter_index / total_chapters * 100, 2)

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ReadingProgress":
        return cls(**_known(cls, record))


@dataclass(slots=True)
class ReaderSetting:
    id: str = DEFAULT_READER_SETTING["id"]
    name: str = DEFAULT_READER_SETTING["name"]
    theme: str = DEFAULT_READER_SETTING["theme"]
    font_size: int = DEFAULT_READER_SETTING["font_size"]
    font_color: str = DEFAULT_READER_SETTING["font_color"]
    page_width: int = DEFAULT_READER_SETTING["page_width"]
    page_padding: int = DEFAULT_READER_SETTING["page_padding"]
    line_height: float = DEFAULT_READER_SETTING["line_height"]
    background_color: str = DEFAULT_READER_SETTING["background_color"]
    content_background_color: str = DEFAULT_READER_SETTING["content_background_color"]

    def apply_theme(self, theme: str) -> None:
        """Switch to *theme*, copying its colours.

        Raises:
            KeyError: If *theme* is not a known reader theme.
        """
        palette = READER_THEMES[theme]
        self.theme = theme
        self.font_color = palette["font_color"]
        self.background_color = palette["background_color"]
        self.content_background_color = palette["content_background_color"]

    def to_record(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "ReaderSetting":
        return cls(**_known(cls, record))
