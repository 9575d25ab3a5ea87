"""Field level normalisation helpers."""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional
from urllib.parse import urljoin

_WHITESPACE_RE = re.compile(r"\s+")
_NON_DIGIT_RE = re.compile(r"\D")
_PHONE_RE = re.compile(r"[+\d][\d\-().\s*]{4,}")
_BACKGROUND_URL_RE = re.compile(r"url\(\s*['\"]?([^'\")]+)['\"]?\s*\)")

HIDDEN_PHONE = "+7 *** *** ****"


def clean_text(value: Optional[str]) -> str:
    """Collapse runs of whitespace, including non-breaking spaces."""
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value.replace("\xa0", " ")).strip()


def parse_price(value: Optional[str]) -> Optional[int]:
    """Read an integer price out of text such as ``"45 000 000 ₸"``."""
    if not value:
        return None
    digits = _NON_DIGIT_RE.sub("", value)
    if not digits:
        return None
    return int(digits)


def normalise_phone(value: Optional[str]) -> str:
    """Return the first phone-looking token with separators tidied up."""
    text = clean_text(value)
    if not text:
        return ""
    match = _PHONE_RE.search(text)
    if not match:
        return text
    return clean_text(match.group(0))


def background_image_url(style: Optional[str]) -> Optional[str]:
    """Pull the URL out of an inline ``background-image: url(...)`` style."""
    if not style:
        return None
    match = _BACKGROUND_URL_RE.search(style)
    return match.group(1).strip() if match else None


def normalise_photos(urls: Iterable[Optional[str]], *, base_url: Optional[str] = None) -> List[str]:
    """Deduplicate photo URLs preserving order, resolving relative ones."""
    seen: List[str] = []
    for item in urls:
        if not isinstance(item, str):
            continue
        cleaned = item.strip()
        if not cleaned:
            continue
        if base_url:
            cleaned = urljoin(base_url, cleaned)
        if cleaned not in seen:
            seen.append(cleaned)
    return seen


def normalise_characteristics(pairs: Iterable[tuple[Optional[str], Optional[str]]]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for key, value in pairs:
        key_text = clean_text(key).rstrip(":")
        if not key_text:
            continue
        result[key_text] = clean_text(value)
    return result


def absolute_link(href: Optional[str], base_url: Optional[str]) -> Optional[str]:
    if not href:
        return None
    href = href.strip()
    if not href or href.startswith(("javascript:", "#")):
        return None
    return urljoin(base_url, href) if base_url else href
