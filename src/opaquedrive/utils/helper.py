import datetime as _dt

from typing import Optional

from opaquedrive.utils.dataModels import CONTENT_PREFIX

_ISO_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def content_key(file_id: str) -> str:
    return f"{CONTENT_PREFIX}{file_id}"


def now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).strftime(_ISO_FMT)


def parse_iso(ts: str) -> _dt.datetime:
    if ts.endswith("Z"):
        ts = ts[:-1] + "+00:00"
    return _dt.datetime.fromisoformat(ts)


def next_timestamp(previous: Optional[str]) -> str:
    """Current time, nudged forward so it sorts strictly after `previous`."""
    now = _dt.datetime.now(_dt.timezone.utc)
    if previous:
        prev = parse_iso(previous)
        if prev.tzinfo is None:
            prev = prev.replace(tzinfo=_dt.timezone.utc)
        if now <= prev:
            now = prev + _dt.timedelta(microseconds=1)
    return now.astimezone(_dt.timezone.utc).strftime(_ISO_FMT)


def add_copy_suffix(file_name: str) -> str:
    """'a.txt' -> 'a (copy).txt', 'README' -> 'README (copy)'."""
    dot = file_name.rfind(".")
    if dot == -1:
        return f"{file_name} (copy)"
    return f"{file_name[:dot]} (copy){file_name[dot:]}"
