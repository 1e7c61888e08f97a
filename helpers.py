import re
from typing import Any, List, Optional, Tuple

from schemas import is_absolute_url

HTML_ENTITIES = {
    "&nbsp;": " ",
    "&lt;": "<",
    "&gt;": ">",
    "&quot;": '"',
    "&#39;": "'",
    "&apos;": "'",
}


def ensure_https(url: Optional[str]) -> Optional[str]:
    if not url: return None
    return re.sub(r"^http:", "https:", url.strip())


def clean_image_url(url: Any) -> Optional[str]:
    """HTTPS-normalize an image URL, dropping it if it does not parse."""
    if not isinstance(url, str): return None
    secure_url = ensure_https(url)
    if not secure_url or not is_absolute_url(secure_url): return None
    if "books.google.com" in secure_url:
        secure_url = secure_url.replace("&edge=curl", "")
    return secure_url


def clean_link(url: Any) -> Optional[str]:
    if not isinstance(url, str) or not is_absolute_url(url): return None
    return url


def clean_html_text(text: Optional[str]) -> Optional[str]:
    if not text: return None
    clean = re.sub(r"<[^>]*>", "", text)
    for entity, char in HTML_ENTITIES.items():
        clean = clean.replace(entity, char)
    # &amp; last so "&amp;lt;" stays literal
    clean = clean.replace("&amp;", "&").strip()
    return clean or None


def clean_plain_text(text: Optional[str]) -> Optional[str]:
    if not text: return None
    clean = text.replace("\r\n", "\n").replace("\r", "\n")
    clean = re.sub(r"\n{3,}", "\n\n", clean).strip()
    return clean or None


def split_isbns(values: Any) -> Tuple[Optional[str], Optional[str]]:
    """Classify a mixed list of ISBN-ish values into (isbn10, isbn13)."""
    isbn_10, isbn_13 = None, None
    if not isinstance(values, list): return isbn_10, isbn_13
    for raw in values:
        clean = re.sub(r"[^0-9X]", "", str(raw))
        if len(clean) == 10 and not isbn_10: isbn_10 = clean
        elif len(clean) == 13 and not isbn_13: isbn_13 = clean
    return isbn_10, isbn_13


def first_string(value: Any) -> Optional[str]:
    if isinstance(value, list):
        for item in value:
            if item is not None and str(item).strip(): return str(item)
        return None
    if isinstance(value, str) and value.strip(): return value
    return None


def string_list(value: Any, limit: Optional[int] = None) -> List[str]:
    if not isinstance(value, list): return []
    items = [v for v in value if isinstance(v, str) and v.strip()]
    return items[:limit] if limit is not None else items


def positive_int(value: Any) -> Optional[int]:
    if isinstance(value, bool): return None
    if isinstance(value, int) and value > 0: return value
    if isinstance(value, float) and value.is_integer() and value > 0: return int(value)
    return None
