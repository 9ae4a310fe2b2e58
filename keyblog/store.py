"""
Whole-file JSON collections + markdown pages under one data directory.

Every collection is read from disk on each call and rewritten in full on
save.  There is no cache; the only in-process state is one lock per file.
"""

import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path

log = logging.getLogger(__name__)

COLLECTIONS = {
    "settings": ("settings.json", dict),
    "articles": ("articles/metadata.json", list),
    "keys": ("keys.json", list),
}
PAGES = ("about", "privacy")
ARTICLE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_locks: dict[str, threading.RLock] = {}
_locks_guard = threading.Lock()


class StoreError(Exception):
    pass


class CorruptCollection(StoreError):
    """The file on disk is not valid JSON of the expected shape; refuse to overwrite it."""

    def __init__(self, path: Path):
        super().__init__(f"{path} is damaged – fix or move it away first")
        self.path = path


class ContentMissing(StoreError):
    pass


def valid_article_id(article_id: str | None) -> bool:
    return bool(article_id) and bool(ARTICLE_ID_RE.match(article_id))


def _lock_for(path: Path) -> threading.RLock:
    key = str(path.resolve())
    with _locks_guard:
        return _locks.setdefault(key, threading.RLock())


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class JsonStore:
    def __init__(self, root):
        self.root = Path(root)

    # ── layout ─────────────────────────────────────────────────────────
    def path(self, name: str) -> Path:
        try:
            rel, _ = COLLECTIONS[name]
        except KeyError:
            raise ValueError(f"unknown collection: {name}") from None
        return self.root / rel

    @property
    def content_dir(self) -> Path:
        return self.root / "content"

    @property
    def images_dir(self) -> Path:
        return self.root / "images"

    def ensure_dirs(self) -> None:
        for d in (self.root, self.root / "articles", self.content_dir, self.images_dir):
            d.mkdir(parents=True, exist_ok=True)

    # ── collections ────────────────────────────────────────────────────
    def _parse(self, path: Path):
        # utf-8-sig swallows a leading BOM
        return json.loads(path.read_text(encoding="utf-8-sig"))

    def load(self, name: str):
        path = self.path(name)
        empty = COLLECTIONS[name][1]
        if not path.exists():
            return empty()
        try:
            data = self._parse(path)
        except (OSError, ValueError):
            log.exception("Could not read %s, treating it as empty", path)
            return empty()
        if not isinstance(data, empty):
            log.error("%s holds %s, expected %s", path, type(data).__name__, empty.__name__)
            return empty()
        return data

    def save(self, name: str, data) -> None:
        path = self.path(name)
        if path.exists():
            try:
                current = self._parse(path)
            except ValueError:
                log.error("Refusing to overwrite corrupt collection %s", path)
                raise CorruptCollection(path) from None
            if not isinstance(current, COLLECTIONS[name][1]):
                log.error("Refusing to overwrite %s, it holds %s", path, type(current).__name__)
                raise CorruptCollection(path)
        _atomic_write(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")

    @contextmanager
    def locked(self, name: str):
        """Serialize read-mutate-write cycles on one collection."""
        with _lock_for(self.path(name)):
            yield

    @contextmanager
    def editing(self, name: str):
        """Load *name*, let the caller mutate it in place, then save it."""
        with self.locked(name):
            data = self.load(name)
            yield data
            self.save(name, data)

    # ── article bodies ─────────────────────────────────────────────────
    def content_path(self, article_id: str) -> Path:
        if not valid_article_id(article_id):
            raise ContentMissing(f"bad article id: {article_id!r}")
        return self.content_dir / f"{article_id}.md"

    def read_content(self, article_id: str) -> str:
        path = self.content_path(article_id)
        try:
            return path.read_text(encoding="utf-8-sig")
        except OSError as exc:
            raise ContentMissing(str(path)) from exc

    def write_content(self, article_id: str, text: str) -> None:
        _atomic_write(self.content_path(article_id), text)

    def delete_content(self, article_id: str) -> bool:
        try:
            self.content_path(article_id).unlink()
        except (OSError, ContentMissing):
            return False
        return True

    # ── static pages ───────────────────────────────────────────────────
    def page_path(self, name: str) -> Path:
        if name not in PAGES:
            raise ValueError(f"unknown page: {name}")
        return self.root / f"{name}.md"

    def read_page(self, name: str) -> str | None:
        path = self.page_path(name)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8-sig")

    def write_page(self, name: str, text: str) -> None:
        _atomic_write(self.page_path(name), text)
