import math
import re
from typing import Optional

from ..logging import get_logger

_LOG = get_logger("normalize")

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*):/+")
_AMOUNT_RE = re.compile(r"\d+(\.\d+)?")
_RECEIPT_ID_RE = re.compile(r"refund_req(\d+)", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """Collapse repeated slashes in a URL and restore the `scheme://` separator.

    Both "https://host/bucket//file.png" and "https:/host/bucket/file.png"
    become "https://host/bucket/file.png". Anything after `?` is left alone.
    """
    if not url:
        return url
    s = str(url).strip()
    query = ""
    if "?" in s:
        s, query = s.split("?", 1)
        query = "?" + query
    m = _SCHEME_RE.match(s)
    if not m:
        return re.sub(r"/{2,}", "/", s) + query
    rest = re.sub(r"/{2,}", "/", s[m.end():])
    return f"{m.group(1)}://{rest}{query}"


def fix_storage_url(url: str, bucket: str) -> str:
    """Apply the storage quirk: double the separator after the bucket and drop a trailing '?'."""
    if not url:
        return url
    fixed = url.replace(f"/{bucket}/", f"/{bucket}//", 1)
    if fixed.endswith("?"):
        fixed = fixed[:-1]
    return fixed


def parse_amount(text: Optional[str]) -> Optional[float]:
    """Read a numeric total out of free-form model output.

    First numeric run anywhere in the text wins; otherwise the whole trimmed
    text is tried as a float. Returns None when neither yields a finite number.
    """
    if text is None:
        return None
    s = str(text)
    m = _AMOUNT_RE.search(s)
    if m:
        return float(m.group(0))
    try:
        value = float(s.strip())
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return value


def record_id_from_filename(filename: str) -> Optional[int]:
    """`refund_req7.png` -> 7; None when the name carries no id."""
    m = _RECEIPT_ID_RE.search(filename or "")
    if not m:
        return None
    return int(m.group(1))


def strip_brackets(value: str) -> str:
    return (value or "").replace("[", "").replace("]", "").strip().strip(",")


def error_category(message: Optional[str]) -> str:
    """Bucket an error message for the grouped batch summary."""
    msg = (message or "").strip()
    low = msg.lower()
    if "429" in low or "rate limit" in low or "quota" in low:
        return "API rate limit exceeded"
    if "404" in low or "not found" in low:
        return "Not found in storage"
    if "timeout" in low or "timed out" in low:
        return "Network timeout"
    if "no amount" in low or "extract" in low:
        return "No amount extracted"
    first = msg.splitlines()[0] if msg else ""
    return first or "Unknown error"
