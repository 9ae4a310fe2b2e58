"""
Key (card code) lifecycle.

A key is created ``unused``, becomes ``active`` and bound to an article the
first time it unlocks one, and turns ``expired`` once its duration has run
out.  Everything here works on the plain dicts stored in ``keys.json`` and
mutates them in place; persisting is the caller's job.
"""

import secrets
import string
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import NamedTuple

UNUSED, ACTIVE, EXPIRED = "unused", "active", "expired"
STATUSES = (UNUSED, ACTIVE, EXPIRED)
UNLIMITED = -1
CODE_PREFIX = "KM"
CODE_LEN = 9
CODE_ALPHABET = string.digits + string.ascii_uppercase
MAX_BATCH = 500
MAX_DURATION_HOURS = 10 * 365 * 24


class Denial(Enum):
    INVALID_KEY = "Invalid key."
    KEY_EXPIRED = "This key has expired."
    ARTICLE_MISMATCH = "This key is bound to another article, please use a new key."
    DEVICE_LIMIT_EXCEEDED = "This key is bound to other devices, please use a new key."
    CONTENT_READ_FAILURE = "Failed to read the article content."
    NOT_FOUND = "Article not found."

    @property
    def message(self) -> str:
        return self.value


class Outcome(NamedTuple):
    ok: bool
    reason: Denial | None = None
    changed: bool = False


class KeyNotFound(LookupError):
    pass


class KeyInUse(Exception):
    """Used keys stay until the article they unlock is gone."""


# ── timestamps ─────────────────────────────────────────────────────────
def format_ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_ts(value: str | None) -> datetime | None:
    """
    Parse an ISO-8601 timestamp.  Older data has a trailing ``Z`` and naive
    values are taken as UTC.  Garbage → ``None``.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ── creation ───────────────────────────────────────────────────────────
def new_code(taken=()) -> str:
    while True:
        code = CODE_PREFIX + "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LEN))
        if code not in taken:
            return code


def check_duration(hours: int) -> int:
    """*hours* must be ``UNLIMITED`` or between 1 hour and ten years."""
    if hours != UNLIMITED and not 1 <= hours <= MAX_DURATION_HOURS:
        raise ValueError(
            f"duration must be {UNLIMITED} or 1..{MAX_DURATION_HOURS} hours, got {hours}"
        )
    return hours


def new_key(duration_hours: int, now: datetime, taken=()) -> dict:
    return {
        "code": new_code(taken),
        "status": UNUSED,
        "bound_article_id": None,
        "create_time": format_ts(now),
        "activate_time": None,
        "expire_time": None,
        "duration_hours": duration_hours,
        "fingerprints": [],
    }


def generate(keys: list, count: int, duration_hours: int, now: datetime) -> list:
    """
    Prepend *count* fresh keys to *keys* (newest first); return them.

    A count below one makes nothing.  Raises ``ValueError`` for a duration
    ``check_duration`` rejects.
    """
    check_duration(duration_hours)
    count = max(0, min(count, MAX_BATCH))
    taken = {k.get("code") for k in keys}
    fresh = []
    for _ in range(count):
        key = new_key(duration_hours, now, taken)
        taken.add(key["code"])
        keys.insert(0, key)
        fresh.append(key)
    return fresh


def find(keys: list, code: str | None) -> dict | None:
    if not code:
        return None
    return next((k for k in keys if k.get("code") == code), None)


# ── redemption ─────────────────────────────────────────────────────────
def redeem(
    keys: list,
    code: str | None,
    article_id: str,
    fingerprint: str | None,
    now: datetime,
    max_devices: int,
) -> Outcome:
    """
    Try to unlock *article_id* with *code* from the device *fingerprint*.

    The matched record is mutated in place.  ``Outcome.changed`` tells the
    caller whether the collection has to be written back; that includes the
    expiry transition, which is persisted even though redemption fails.
    """
    key = find(keys, code)
    if key is None:
        return Outcome(False, Denial.INVALID_KEY)

    status = key.get("status")
    if status == EXPIRED:
        return Outcome(False, Denial.KEY_EXPIRED)

    prints = key.setdefault("fingerprints", [])

    if status == UNUSED:
        key["status"] = ACTIVE
        key["bound_article_id"] = article_id
        key["activate_time"] = format_ts(now)
        if fingerprint:
            key["fingerprints"] = [fingerprint]
        duration = key.get("duration_hours", UNLIMITED)
        if duration != UNLIMITED:
            # records written before durations were bounded may hold anything
            hours = max(0, min(duration, MAX_DURATION_HOURS))
            key["expire_time"] = format_ts(now + timedelta(hours=hours))
        return Outcome(True, changed=True)

    if key.get("bound_article_id") != article_id:
        return Outcome(False, Denial.ARTICLE_MISMATCH)

    changed = False
    if fingerprint and fingerprint not in prints:
        if len(prints) >= max_devices:
            return Outcome(False, Denial.DEVICE_LIMIT_EXCEEDED)
        prints.append(fingerprint)
        changed = True

    expires = parse_ts(key.get("expire_time"))
    if expires is not None and now >= expires:
        key["status"] = EXPIRED
        return Outcome(False, Denial.KEY_EXPIRED, changed=True)

    return Outcome(True, changed=changed)


def remaining_seconds(key: dict, now: datetime) -> int | None:
    """Seconds until *key* expires, ``None`` for unlimited keys."""
    expires = parse_ts(key.get("expire_time"))
    if expires is None:
        return None
    return max(0, int((expires - now).total_seconds()))


# ── admin ──────────────────────────────────────────────────────────────
def delete(keys: list, code: str, article_ids) -> list:
    """
    Return *keys* without *code*.

    Only unused keys may go, or keys whose bound article no longer exists.
    """
    key = find(keys, code)
    if key is None:
        raise KeyNotFound(code)
    bound = key.get("bound_article_id")
    orphaned = bool(bound) and bound not in set(article_ids)
    if key.get("status") != UNUSED and not orphaned:
        raise KeyInUse(code)
    return [k for k in keys if k.get("code") != code]


def make_unlimited(keys: list) -> int:
    """Turn every key into an unlimited one and revive expired keys."""
    for key in keys:
        key["duration_hours"] = UNLIMITED
        if key.get("status") in (ACTIVE, EXPIRED):
            key["expire_time"] = None
            key["status"] = ACTIVE
    return len(keys)
