"""Typer-based CLI entry point."""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import hashlib
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from .config import BOOK_GENRES, DEFAULT_GENRE_ID, load_store_config
from .errors import AuraError, BookNotFoundError, ImportFailedError
from .library import AURA_SCHEMA, BookImport, Bookshelf
from .models import Book, Chapter
from .storage import create_store

T = TypeVar("T")

app = typer.Typer(help="Local e-book shelf backed by a transactional object store")
console = Console()

_state: Dict[str, Optional[Path]] = {"home": None}


@app.callback()
def main(
    home: Optional[Path] = typer.Option(
        None, "--home", help="Directory holding the .aura work dir (default: AURA_HOME or your home)"
    ),
) -> None:
    _state["home"] = home


def _handle_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (BookNotFoundError, ImportFailedError) as exc:
            typer.echo(f"Error: {exc}", err=True)
            raise typer.Exit(1) from exc
        except AuraError as exc:
            typer.echo(f"Unexpected error: {exc}", err=True)
            raise typer.Exit(1) from exc

    return wrapper


def _run(operation: Callable[[Bookshelf], Awaitable[T]]) -> T:
    config = load_store_config()
    home = _state["home"] or config.home or Path.home()
    config = dataclasses.replace(config, home=home)

    async def runner() -> T:
        store = create_store(AURA_SCHEMA, config)
        try:
            return await operation(Bookshelf(store))
        finally:
            store.close()
            store.engine.shutdown()

    return asyncio.run(runner())


def _genre_name(genre_id: int) -> str:
    return BOOK_GENRES.get(genre_id, f"#{genre_id}")


def _load_manifest(path: Path, genre_id: Optional[int]) -> List[BookImport]:
    """Turn a manifest of prepared books into imports.

    Content hashes are computed here, before any transaction opens.
    """
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(f"Cannot read manifest {path}: {exc}") from exc
    entries = payload.get("books", []) if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        raise typer.BadParameter("Manifest must be a list of books or an object with a 'books' list")

    imports = []
    for entry in entries:
        chapters = [
            Chapter(
                index=raw.get("index", position),
                title=raw.get("title", f"Chapter {position}"),
                lines=list(raw.get("lines", [])),
                start_line_number=raw.get("start_line_number", 1),
                end_line_number=raw.get("end_line_number", len(raw.get("lines", []))),
            )
            for position, raw in enumerate(entry.get("chapters", []), start=1)
        ]
        title = entry.get("title") or Path(entry.get("name", "untitled")).stem
        book = Book(
            title=title,
            name=entry.get("name", f"{title}.txt"),
            hash=entry.get("hash") or _content_hash(title, chapters),
            size=int(entry.get("size", sum(len(chapter.content) for chapter in chapters))),
            genre_id=genre_id or int(entry.get("genre_id", DEFAULT_GENRE_ID)),
            created_time=int(entry.get("created_time", 0)),
        )
        imports.append(BookImport(book=book, chapters=chapters))
    return imports


def _content_hash(title: str, chapters: List[Chapter]) -> str:
    digest = hashlib.sha256(title.encode("utf-8"))
    for chapter in chapters:
        digest.update(chapter.content.encode("utf-8"))
    return digest.hexdigest()


@app.command()
@_handle_errors
def books(genre: Optional[int] = typer.Option(None, "--genre", help="Only list this genre id")) -> None:
    """List the books on the shelf."""

    found = _run(lambda shelf: shelf.books() if genre is None else shelf.books_in_genre(genre))
    if not found:
        print("[yellow]The shelf is empty")
        return
    table = Table("ID", "Title", "Genre", "Size")
    for book in found:
        table.add_row(str(book.id), book.title, _genre_name(book.genre_id), str(book.size))
    console.print(table)


@app.command("import")
@_handle_errors
def import_books(
    manifest: Path = typer.Argument(..., exists=True, dir_okay=False),
    genre: Optional[int] = typer.Option(None, "--genre", help="Override the genre of every book"),
) -> None:
    """Import prepared books from a JSON manifest."""

    imports = _load_manifest(manifest, genre)
    stored, failures = _run(lambda shelf: shelf.add_books(imports))
    print(f"[green]Imported {len(stored)} book(s)")
    for failure in failures:
        typer.echo(f"Error: {failure}", err=True)
    if failures:
        raise typer.Exit(1)


@app.command()
@_handle_errors
def remove(book_id: int) -> None:
    """Remove a book with its chapters, contents and progress."""

    chapters = _run(lambda shelf: shelf.delete_book(book_id))
    print(f"[green]Removed book {book_id} ({chapters} chapter(s))")


@app.command()
@_handle_errors
def clear(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")) -> None:
    """Remove every book from the shelf."""

    if not yes:
        typer.confirm("Remove every book from the shelf?", abort=True)
    _run(lambda shelf: shelf.clear())
    print("[green]Cleared the bookshelf")


@app.command()
@_handle_errors
def stats() -> None:
    """Show the number of books per genre."""

    async def collect(shelf: Bookshelf) -> Dict[str, Any]:
        all_books = await shelf.books()
        return {"total": await shelf.book_count(), "books": all_books}

    result = _run(collect)
    counts: Dict[int, int] = {}
    for book in result["books"]:
        counts[book.genre_id] = counts.get(book.genre_id, 0) + 1
    table = Table("Genre", "Books")
    for genre_id, count in sorted(counts.items()):
        table.add_row(_genre_name(genre_id), str(count))
    console.print(table)
    print(f"Total: {result['total']} book(s)")


if __name__ == "__main__":
    app()
