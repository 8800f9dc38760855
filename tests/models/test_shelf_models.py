import pytest

from aura.config import DEFAULT_READER_SETTING
from aura.models import Book, Chapter, ReaderSetting, ReadingProgress, TableOfContents


def test_book_record_omits_unset_fields():
    record = Book(title="Dune", name="dune.txt").to_record()

    assert "id" not in record
    assert "hash" not in record
    assert record["title"] == "Dune"
    assert record["genre_id"] == 1


def test_book_from_record_ignores_unknown_fields():
    book = Book.from_record({"id": 3, "title": "Dune", "hash": "h", "cover": "x.png"})

    assert book.id == 3
    assert book.hash == "h"


def test_chapter_id_defaults_to_index():
    chapter = Chapter(index=4, title="Four", lines=["a", "b"])

    assert chapter.id == 4
    assert chapter.content == "a\nb"
    assert Chapter.from_record(chapter.to_record()) == chapter


def test_table_of_contents_for_chapters():
    chapters = [Chapter(index=1, title="One"), Chapter(index=2, title="Two")]
    contents = TableOfContents.for_chapters(chapters)
    contents.book_id = 9

    record = contents.to_record()

    assert record == {"book_id": 9, "contents": [{"index": 1, "title": "One"}, {"index": 2, "title": "Two"}]}
    assert TableOfContents.from_record(record) == contents


@pytest.mark.parametrize(
    "chapter_index, total, expected",
    [(1, 3, 33.33), (3, 3, 100.0), (1, 0, 0.0)],
)
def test_progress_rate(chapter_index, total, expected):
    assert ReadingProgress(book_id=1, chapter_index=chapter_index).rate(total) == expected


def test_reader_setting_defaults_and_theme():
    setting = ReaderSetting()

    assert setting.to_record() == DEFAULT_READER_SETTING

    setting.apply_theme("dark")
    assert setting.theme == "dark"
    assert setting.background_color == "#202124"

    with pytest.raises(KeyError):
        setting.apply_theme("neon")
