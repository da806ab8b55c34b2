# FILE: trustgate/sanitize.py
"""
Input neutralisation, applied before any other pipeline stage.

Two passes over body, query and path parameters:

  1. Document-store key scrubbing: object keys starting with "$" or holding
     a "." are rewritten ("$where" -> "_where", "a.b" -> "a_b"). Attempts are
     logged as security events.

  2. Field-class-aware cleaning: a static classifier maps the property name
     to a policy (rich-html, limited-html, plain-text, url, email, raw) and
     every string under that name is cleaned with it. Nested objects are
     classified by their own keys; list items inherit their parent's class.
"""
from __future__ import annotations

import logging
import re
import threading
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import bleach
from bleach.html5lib_shim import Filter
from pydantic import EmailStr, HttpUrl, TypeAdapter, ValidationError

from .logging import log_security_event

logger = logging.getLogger(__name__)


class FieldClass(str, Enum):
    RICH_HTML = "rich-html"
    LIMITED_HTML = "limited-html"
    PLAIN_TEXT = "plain-text"
    URL = "url"
    EMAIL = "email"
    RAW = "no-sanitize"


_FIELD_CLASSES: Dict[str, FieldClass] = {}
for _name in (
    "content",
    "description",
    "longDescription",
    "blogContent",
    "articleBody",
    "termsAndConditions",
):
    _FIELD_CLASSES[_name] = FieldClass.RICH_HTML
for _name in ("comment", "review", "feedback", "shortDescription", "excerpt", "terms"):
    _FIELD_CLASSES[_name] = FieldClass.LIMITED_HTML
for _name in (
    "url",
    "website",
    "link",
    "imageUrl",
    "profileUrl",
    "redirectUrl",
    "thumbnailUrl",
    "logoUrl",
):
    _FIELD_CLASSES[_name] = FieldClass.URL
for _name in ("email", "contactEmail", "supportEmail"):
    _FIELD_CLASSES[_name] = FieldClass.EMAIL
for _name in (
    "password",
    "passwordConfirm",
    "newPassword",
    "currentPassword",
    "token",
    "refreshToken",
    "accessToken",
):
    _FIELD_CLASSES[_name] = FieldClass.RAW
del _name


def classify(field: Optional[str]) -> FieldClass:
    if field is None:
        return FieldClass.PLAIN_TEXT
    return _FIELD_CLASSES.get(field, FieldClass.PLAIN_TEXT)


# ---------------------------------------------------------------------------
# HTML policies (bleach)
# ---------------------------------------------------------------------------

RICH_TAGS = frozenset(
    {
        "h1", "h2", "h3", "h4", "h5", "h6", "blockquote", "p", "a", "ul", "ol",
        "nl", "li", "b", "i", "strong", "em", "strike", "code", "hr", "br", "div",
        "table", "thead", "caption", "tbody", "tr", "th", "td", "pre", "img", "span",
    }
)
RICH_ATTRIBUTES: Dict[str, List[str]] = {
    "a": ["href", "name", "target", "rel"],
    "img": ["src", "alt", "title", "width", "height"],
    "div": ["class", "id"],
    "span": ["class", "id"],
    "p": ["class"],
    "table": ["class", "id"],
    "th": ["scope"],
}
RICH_PROTOCOLS = frozenset({"http", "https", "mailto"})

LIMITED_TAGS = frozenset({"p", "b", "i", "em", "strong", "a", "br"})
LIMITED_ATTRIBUTES: Dict[str, List[str]] = {"a": ["href", "rel", "target"]}
LIMITED_PROTOCOLS = frozenset({"http", "https"})


class _ExternalLinkFilter(Filter):
    """Force target=_blank and rel="noopener noreferrer" on every link."""

    def __iter__(self):
        for token in super().__iter__():
            if token["type"] in ("StartTag", "EmptyTag") and token["name"] == "a":
                attrs = dict(token.get("data") or {})
                attrs[(None, "target")] = "_blank"
                attrs[(None, "rel")] = "noopener noreferrer"
                token["data"] = attrs
            yield token


_rich_cleaner = bleach.Cleaner(
    tags=RICH_TAGS,
    attributes=RICH_ATTRIBUTES,
    protocols=RICH_PROTOCOLS,
    strip=True,
    strip_comments=True,
    filters=[_ExternalLinkFilter],
)
_limited_cleaner = bleach.Cleaner(
    tags=LIMITED_TAGS,
    attributes=LIMITED_ATTRIBUTES,
    protocols=LIMITED_PROTOCOLS,
    strip=True,
    strip_comments=True,
)
# Cleaner instances keep parser state between calls.
_cleaner_lock = threading.Lock()

_url_adapter = TypeAdapter(HttpUrl)
_email_adapter = TypeAdapter(EmailStr)


def clean_rich(value: str) -> str:
    with _cleaner_lock:
        return _rich_cleaner.clean(value)


def clean_limited(value: str) -> str:
    with _cleaner_lock:
        return _limited_cleaner.clean(value)


def clean_plain(value: str) -> str:
    return bleach.clean(value, tags=[], attributes={}, strip=True, strip_comments=True)


def clean_url(value: str) -> str:
    """Absolute http(s) URLs and root-relative paths pass; anything else is '#'."""
    v = value.strip()
    if v.startswith("/") and not v.startswith("//"):
        return v
    try:
        _url_adapter.validate_python(v)
    except ValidationError:
        return "#"
    return v


def clean_email(value: str) -> str:
    v = value.strip()
    try:
        _email_adapter.validate_python(v)
    except ValidationError:
        return ""
    return v


def clean_value(value: Any, field_class: FieldClass) -> Any:
    if not isinstance(value, str):
        return value
    if field_class is FieldClass.RAW:
        return value
    if field_class is FieldClass.RICH_HTML:
        return clean_rich(value)
    if field_class is FieldClass.LIMITED_HTML:
        return clean_limited(value)
    if field_class is FieldClass.URL:
        return clean_url(value)
    if field_class is FieldClass.EMAIL:
        return clean_email(value)
    return clean_plain(value)


# ---------------------------------------------------------------------------
# Key scrubbing
# ---------------------------------------------------------------------------

_UNSAFE_KEY = re.compile(r"^\$|\.")


def scrub_key(key: str) -> str:
    return _UNSAFE_KEY.sub("_", key)


def _walk(value: Any, field: Optional[str], hits: List[str], path: str) -> Any:
    if isinstance(value, Mapping):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            key = str(k)
            safe = scrub_key(key)
            if safe != key:
                hits.append(f"{path}{key}")
            out[safe] = _walk(v, safe, hits, f"{path}{safe}.")
        return out
    if isinstance(value, list):
        return [_walk(v, field, hits, path) for v in value]
    return clean_value(value, classify(field))


def sanitize_payload(
    value: Any,
    *,
    source: str = "body",
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Any:
    """
    Scrub operator/dotted keys and clean every string by field class.

    Returns a new structure; the input is left untouched.
    """
    hits: List[str] = []
    out = _walk(value, None, hits, "")
    if hits:
        log_security_event(
            logger,
            event="injection_attempt",
            client_ip=client_ip,
            user_agent=user_agent,
            reason="document_store_operator_key",
            extra={"source": source, "keys": hits[:20]},
        )
    return out


def sanitize_request_parts(
    body: Any,
    query: Mapping[str, Any],
    path_params: Mapping[str, Any],
    *,
    client_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Tuple[Any, Dict[str, Any], Dict[str, Any]]:
    kw = {"client_ip": client_ip, "user_agent": user_agent}
    clean_body = sanitize_payload(body, source="body", **kw) if body is not None else None
    clean_query = sanitize_payload(dict(query), source="query", **kw)
    clean_params = sanitize_payload(dict(path_params), source="params", **kw)
    return clean_body, clean_query, clean_params


__all__ = [
    "FieldClass",
    "classify",
    "clean_value",
    "clean_rich",
    "clean_limited",
    "clean_plain",
    "clean_url",
    "clean_email",
    "scrub_key",
    "sanitize_payload",
    "sanitize_request_parts",
]
