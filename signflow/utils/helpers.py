"""Shared utility functions used by blueprints and services.

parse_date:          lenient date parser, None on bad input
parse_datetime:      lenient datetime parser, returns aware UTC datetimes
utcnow / as_utc:     timezone handling (SQLite hands back naive datetimes)
sha256_file:         content hash of a stored file
actor_id_from_request: caller identity from body or X-User-Id header
"""
import hashlib
from datetime import date, datetime, timezone

from flask import request


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return *value* as an aware UTC datetime.

    SQLite drops tzinfo on ``DateTime(timezone=True)`` columns, PostgreSQL
    keeps it; every comparison in the workflow goes through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD/MM/YYYY) to a date object.

    Returns None for empty/invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d/%m/%Y").date()
    except (ValueError, TypeError):
        return None


def _from_epoch(seconds):
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_datetime(value):
    """Parse an ISO datetime, a date, or an epoch-seconds number.

    Plain dates become midnight UTC. Returns None on empty/invalid input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.isdecimal():
        return _from_epoch(int(text))
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    parsed = parse_date(text)
    if parsed is None:
        return None
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)


def sha256_file(path: str) -> str:
    """Hex SHA-256 of a file's content, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def actor_id_from_request(data: dict | None = None) -> int | None:
    """Identity of the caller: ``actor_id`` in the JSON body, else ``X-User-Id``.

    Authentication is handled upstream; this only reads what the gateway
    in front of the service forwarded.
    """
    data = data if data is not None else (request.get_json(silent=True) or {})
    raw = data.get("actor_id") or request.headers.get("X-User-Id")
    if raw in (None, ""):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def client_ip() -> str | None:
    """Client IP, X-Forwarded-For aware."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr
