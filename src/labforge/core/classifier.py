"""
Map provider failures onto a small taxonomy used by the retry loop.

Providers report errors in different shapes: SDK exceptions with a status
attribute, JSON bodies embedded in the message (sometimes JSON inside JSON),
or plain text. classify() never raises.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import CANCELLED_MESSAGE, DaemonUnreachableError, UserCancelledError


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    OVERLOADED = "overloaded"
    UNAUTHORIZED = "unauthorized"
    USER_CANCELLED = "user_cancelled"
    UNKNOWN = "unknown"

    @property
    def is_busy(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.OVERLOADED)


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    code: int
    message: str
    status: str = ""


_STATUS_KINDS = {
    "RESOURCE_EXHAUSTED": ErrorKind.RATE_LIMITED,
    "UNAVAILABLE": ErrorKind.OVERLOADED,
    "UNAUTHENTICATED": ErrorKind.UNAUTHORIZED,
    "PERMISSION_DENIED": ErrorKind.UNAUTHORIZED,
}

_RATE_LIMIT_HINTS = ("429", "rate limit", "rate_limit", "quota", "resource_exhausted", "too many requests")
_OVERLOAD_HINTS = ("503", "overloaded", "unavailable")
_AUTH_HINTS = ("401", "unauthorized", "unauthenticated", "invalid api key", "incorrect api key",
               "api key not valid", "api_key_invalid", "invalid_api_key")


def _error_message(error: Any) -> str:
    if isinstance(error, str):
        return error
    msg = getattr(error, "message", None)
    text = str(error)
    if isinstance(msg, str) and msg and msg not in text:
        return f"{text} {msg}".strip()
    return text or (msg if isinstance(msg, str) else "") or error.__class__.__name__


def _load_json_object(text: str) -> Optional[Dict[str, Any]]:
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        obj = json.loads(text[start:end + 1])
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _unwrap(obj: Dict[str, Any]) -> Dict[str, Any]:
    inner = obj.get("error")
    return inner if isinstance(inner, dict) else obj


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _from_json(text: str) -> Optional[Tuple[Optional[int], str, str]]:
    obj = _load_json_object(text)
    if obj is None:
        return None
    inner = _unwrap(obj)
    nested_msg = inner.get("message")
    if isinstance(nested_msg, str):
        # Some providers double-encode: the message is itself a JSON document
        nested = _load_json_object(nested_msg) if nested_msg.lstrip().startswith("{") else None
        if nested is not None:
            inner = _unwrap(nested)
    code = _as_int(inner.get("code"))
    status = inner.get("status")
    if code is None:
        code = _as_int(status)
    message = inner.get("message") if isinstance(inner.get("message"), str) else text
    return code, message, status if isinstance(status, str) else ""


def _from_attributes(error: Any) -> Tuple[Optional[int], str]:
    code = _as_int(getattr(error, "status_code", None))
    if code is None:
        code = _as_int(getattr(error, "code", None))
    if code is None:
        response = getattr(error, "response", None)
        code = _as_int(getattr(response, "status_code", None))
    status = getattr(error, "status", None)
    if code is None:
        code = _as_int(status)
    return code, status if isinstance(status, str) else ""


def _kind_for(code: Optional[int], status: str, message: str) -> Optional[ErrorKind]:
    if status.upper() in _STATUS_KINDS:
        return _STATUS_KINDS[status.upper()]
    if code == 429:
        return ErrorKind.RATE_LIMITED
    if code in (503, 529):
        return ErrorKind.OVERLOADED
    if code in (401, 403):
        return ErrorKind.UNAUTHORIZED
    if code == 400 and "api key" in message.lower():
        return ErrorKind.UNAUTHORIZED
    return None


def _kind_from_text(message: str) -> Tuple[ErrorKind, int]:
    lower = message.lower()
    if any(h in lower for h in _RATE_LIMIT_HINTS):
        return ErrorKind.RATE_LIMITED, 429
    if any(h in lower for h in _OVERLOAD_HINTS):
        return ErrorKind.OVERLOADED, 503
    if any(h in lower for h in _AUTH_HINTS) or "api key" in lower:
        return ErrorKind.UNAUTHORIZED, 401
    return ErrorKind.UNKNOWN, 0


def classify(error: Any, provider: Optional[str] = None) -> ClassifiedError:
    """
    Classify a raised exception (or a raw error string) from any provider.
    The provider argument is informational; the rules are shared.
    """
    message = _error_message(error)

    if isinstance(error, UserCancelledError) or CANCELLED_MESSAGE in message:
        return ClassifiedError(ErrorKind.USER_CANCELLED, 0, CANCELLED_MESSAGE)

    if isinstance(error, DaemonUnreachableError):
        return ClassifiedError(ErrorKind.UNKNOWN, 0, message)

    parsed = _from_json(message)
    if parsed is not None:
        code, message, status = parsed
        attr_code, attr_status = _from_attributes(error)
        code = code if code is not None else attr_code
        status = status or attr_status
    else:
        code, status = _from_attributes(error)

    if code is None and not status:
        kind, code = _kind_from_text(message)
        return ClassifiedError(kind, code, message)

    kind = _kind_for(code, status, message) or ErrorKind.UNKNOWN
    return ClassifiedError(kind, code or 0, message, status)
