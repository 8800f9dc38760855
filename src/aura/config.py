"""Default configuration values for Aura."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Mapping, Optional

from .errors import ConfigurationError

DATABASE_NAME: Final[str] = "Aura"
DATABASE_VERSION: Final[int] = 1
WORK_DIR_NAME: Final[str] = ".aura"

# Number of idle event-loop iterations a transaction survives after its last
# request settles.  Chained continuations (a future resolving into a task that
# awaits through ``asyncio.gather``) need more than one iteration to run.
DEFAULT_SETTLE_TICKS: Final[int] = 4

# Development-reset mode drops every collection on upgrade before recreating
# the schema.  Off by default so upgrades keep data.
DEFAULT_DEV_RESET: Final[bool] = False

READER_SETTING_ID: Final[str] = "reader-setting"
READER_SETTING_NAME: Final[str] = "reader-setting"

DEFAULT_READER_SETTING: Final[dict] = {
    "id": READER_SETTING_ID,
    "name": READER_SETTING_NAME,
    "theme": "yellow",
    "font_size": 18,
    "font_color": "#000000",
    "page_width": 800,
    "page_padding": 30,
    "line_height": 2,
    "background_color": "#be966e",
    "content_background_color": "#f2e8c8",
}

READER_THEMES: Final[dict[str, dict[str, str]]] = {
    "light": {"font_color": "#000000", "content_background_color": "#ffffff", "background_color": "#ffffff"},
    "dim": {"font_color": "#e3e3e3", "content_background_color": "#111a2e", "background_color": "#111a2e"},
    "dark": {"font_color": "#e3e3e3", "content_background_color": "#202124", "background_color": "#202124"},
    "yellow": {"font_color": "#000000", "content_background_color": "#f2e8c8", "background_color": "#be966e"},
    "blue": {"font_color": "#e3e3e3", "content_background_color": "#d2e3fc", "background_color": "#d2e3fc"},
    "grey": {"font_color": "#e3e3e3", "content_background_color": "#3c3c3c", "background_color": "#3c3c3c"},
}

BOOK_GENRES: Final[dict[int, str]] = {
    1: "Eastern Fantasy",
    2: "Fantasy",
    3: "Wuxia",
    4: "Xianxia",
    5: "Science Fiction",
    6: "Apocalypse",
    7: "Urban",
    8: "Workplace",
    9: "Romance",
    10: "Military",
    11: "History",
    12: "Gaming",
    13: "Sports",
    14: "Supernatural",
    15: "Horror",
    16: "Magic",
}
DEFAULT_GENRE_ID: Final[int] = 1


@dataclass(frozen=True)
class StoreConfig:
    """Runtime knobs for the object store, resolved from the environment."""

    home: Optional[Path]
    dev_reset: bool
    settle_ticks: int

    @property
    def database_root(self) -> Optional[Path]:
        if self.home is None:
            return None
        return self.home / WORK_DIR_NAME


def load_store_config(environ: Optional[Mapping[str, str]] = None) -> StoreConfig:
    """Build a :class:`StoreConfig` from ``AURA_*`` environment variables.

    ``AURA_HOME`` selects the directory holding the ``.aura`` work dir (unset
    keeps databases in memory), ``AURA_DEV_RESET`` toggles development-reset
    upgrades and ``AURA_SETTLE_TICKS`` overrides the idle-iteration budget.

    Raises:
        ConfigurationError: If a value cannot be parsed.
    """

    env = os.environ if environ is None else environ
    home_value = env.get("AURA_HOME")
    home = Path(home_value).expanduser() if home_value else None
    return StoreConfig(
        home=home,
        dev_reset=_parse_flag("AURA_DEV_RESET", env.get("AURA_DEV_RESET"), DEFAULT_DEV_RESET),
        settle_ticks=_parse_ticks(env.get("AURA_SETTLE_TICKS")),
    )


def _parse_flag(key: str, raw: Optional[str], default: bool) -> bool:
    if raw is None or raw == "":
        return default
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"Invalid {key} value: expected a boolean flag, got {raw!r}")


def _parse_ticks(raw: Optional[str]) -> int:
    if raw is None or raw == "":
        return DEFAULT_SETTLE_TICKS
    try:
        ticks = int(raw)
    except ValueError as exc:
        raise ConfigurationError(
            f"Invalid AURA_SETTLE_TICKS value: expected integer, got {raw!r}"
        ) from exc
    if ticks < 1:
        raise ConfigurationError("AURA_SETTLE_TICKS must be at least 1")
    return ticks
