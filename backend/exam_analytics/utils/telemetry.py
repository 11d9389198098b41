"""Normalization of client-submitted telemetry.

Submissions come from browsers of varying vintage, so every optional
structure is coerced into a fixed shape instead of failing the whole
submission: arrays that are missing or malformed become empty lists,
missing timestamps become "now" and missing nested objects take the
zero-value shapes defined below. Everything returned here is plain JSON
(timestamps are epoch milliseconds) ready to store in a JSON column.
"""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, List, Optional

NAVIGATION_ACTIONS = ("visit", "leave", "mark", "unmark", "answer", "clear")
DEVICE_TYPES = ("desktop", "tablet", "mobile")
QUESTION_STATE_KEYS = ("not_visited", "not_answered", "answered", "marked_for_review", "marked_and_answered")
INTERACTION_KEYS = ("mouse_movements", "keyboard_usage", "scroll_patterns")


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_id(value: Any) -> Optional[int]:
    """Return a positive integer id or `None` when the value is not one."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def id_list(value: Any) -> List[int]:
    """Coerce a list of ids; non-lists and unparseable entries are dropped."""
    if not isinstance(value, list):
        return []
    out = []
    for v in value:
        parsed = parse_id(v)
        if parsed is not None:
            out.append(parsed)
    return out


def as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def as_number(value: Any, default: float = 0) -> float:
    """Coerce to a finite float; NaN, infinities and junk become `default`."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


def as_int(value: Any, default: int = 0) -> int:
    number = as_number(value, None)
    return default if number is None else int(number)


def to_epoch_ms(value: Any, default: Optional[int] = None) -> int:
    """Convert epoch milliseconds, ISO strings or datetimes to epoch ms.

    Anything missing or unparseable becomes `default` (or the current time).
    """
    fallback = now_ms() if default is None else default
    if value is None or isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        return as_int(value, fallback)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return fallback
        try:
            float(raw)
        except ValueError:
            pass
        else:
            return as_int(raw, fallback)
        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return fallback
        return to_epoch_ms(dt)
    return fallback


def to_datetime(value: Any, default: Optional[datetime] = None) -> datetime:
    """Like `to_epoch_ms` but returns an aware UTC datetime.

    Epochs outside the range `datetime` can represent fall back to
    `default` (or the current time).
    """
    fallback = to_epoch_ms(default) if default is not None else now_ms()
    try:
        return datetime.fromtimestamp(to_epoch_ms(value, fallback) / 1000, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return datetime.fromtimestamp(fallback / 1000, tz=timezone.utc)


def normalize_answers(raw: list) -> List[dict]:
    """Turn submitted answer entries into the stored answer shape.

    Entries that are not objects or carry no usable question id are skipped.
    `is_correct` is left False here; reconciliation fills it in.
    """
    out = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        qid = parse_id(entry.get("question_id"))
        if qid is None:
            continue
        index = entry.get("answer_option_index")
        if isinstance(index, bool):
            index = None
        if index is not None:
            try:
                index = int(index)
            except (TypeError, ValueError, OverflowError):
                index = None
        numerical = entry.get("numerical_answer")
        if numerical is not None:
            numerical = as_number(numerical, None)
        out.append({
            "question_id": qid,
            "answer_option_index": index,
            "numerical_answer": numerical,
            "time_spent": as_number(entry.get("time_spent")),
            "is_correct": False,
        })
    return out


def normalize_navigation_history(raw: Any) -> List[dict]:
    """Return `[{timestamp, question_id, action, time_spent}]` in submitted order."""
    out = []
    for event in as_list(raw):
        if not isinstance(event, dict):
            continue
        action = event.get("action") or "visit"
        if action not in NAVIGATION_ACTIONS:
            action = "visit"
        out.append({
            "timestamp": to_epoch_ms(event.get("timestamp")),
            "question_id": parse_id(event.get("question_id")),
            "action": action,
            "time_spent": as_number(event.get("time_spent")),
        })
    return out


def normalize_environment(raw: Any) -> dict:
    """Return the environment block with every field present."""
    env = as_dict(raw)
    device = as_dict(env.get("device"))
    session = as_dict(env.get("session"))
    device_type = device.get("device_type") or "desktop"
    if device_type not in DEVICE_TYPES:
        device_type = "desktop"
    disconnections = []
    for d in as_list(session.get("disconnections")):
        if not isinstance(d, dict):
            continue
        disconnections.append({
            "start_time": to_epoch_ms(d.get("start_time")),
            "end_time": to_epoch_ms(d.get("end_time")),
            "duration": as_number(d.get("duration")),
        })
    return {
        "device": {
            "user_agent": device.get("user_agent") or "",
            "screen_resolution": device.get("screen_resolution") or "",
            "device_type": device_type,
        },
        "session": {
            "tab_switches": as_int(session.get("tab_switches")),
            "disconnections": disconnections,
            "browser_refreshes": as_int(session.get("browser_refreshes")),
        },
    }


def normalize_metadata(raw: Any, answers: List[dict], question_count: int, language: str) -> dict:
    meta = as_dict(raw)
    answered = meta.get("answered_questions")
    return {
        "total_questions": question_count,
        "answered_questions": id_list(answered) if isinstance(answered, list) else [a["question_id"] for a in answers],
        "visited_questions": id_list(meta.get("visited_questions")),
        "marked_for_review": id_list(meta.get("marked_for_review")),
        "selected_language": meta.get("selected_language") or language,
    }


def normalize_question_states(raw: Any, answers: List[dict]) -> dict:
    states = as_dict(raw)
    out = {key: id_list(states.get(key)) for key in QUESTION_STATE_KEYS}
    if not isinstance(states.get("answered"), list):
        out["answered"] = [a["question_id"] for a in answers]
    return out


def normalize_interaction_metrics(raw: Any) -> Optional[dict]:
    """Return the interaction block, or `None` when the client sent none."""
    if not isinstance(raw, dict):
        return None
    return {key: as_list(raw.get(key)) for key in INTERACTION_KEYS}


def stored_or_default(section: Optional[dict], key: str, default: Any) -> Any:
    """Read `section[key]` from an optional stored sub-document.

    Absence is signalled by `None` (the whole section) or a missing/None
    key, and yields `default`; stored falsy values such as `0` or `[]`
    are returned as they are.
    """
    if section is None:
        return default
    value = section.get(key)
    return default if value is None else value
