import re
from typing import Any

_MAILTO_RE = re.compile(r"^mailto:")
_SCHEME_RE = re.compile(r"^https?://")
_WWW_RE = re.compile(r"^www\.")
_PATH_SPLIT_RE = re.compile(r"[/?#]")
_DOMAIN_CHARS_RE = re.compile(r"^[a-z0-9.-]+$")
_WHITESPACE_RE = re.compile(r"\s")
_LEGAL_SUFFIX_RE = re.compile(r"\b(?:inc|llc|l\.l\.c|ltd|corp|corporation|company|co)\b\.?")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_TOKEN_SPLIT_RE = re.compile(r"[-_]+")
_URL_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


def clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_domain(value: Any) -> str:
    """Canonical host form of a domain, URL or mailto string.

    The canonicalization is applied until it reaches a fixed point, so nested
    prefixes such as ``http://www.www.example.com`` collapse fully and the
    function stays idempotent.
    """
    current = clean(value).lower()
    while True:
        previous = current
        current = _normalize_domain_pass(current)
        if current == previous:
            return current


def _normalize_domain_pass(value: str) -> str:
    value = value.strip()
    value = _MAILTO_RE.sub("", value)
    value = _SCHEME_RE.sub("", value)
    value = _WWW_RE.sub("", value)
    value = _PATH_SPLIT_RE.split(value, maxsplit=1)[0]
    return value.rstrip(".").strip()


def is_valid_domain_like(value: Any) -> bool:
    domain = normalize_domain(value)
    if not domain:
        # Empty means "no opinion", not an invalid domain.
        return True
    if _WHITESPACE_RE.search(domain):
        return False
    if "." not in domain:
        return False
    if not _DOMAIN_CHARS_RE.match(domain):
        return False
    if len(domain) > 253:
        return False
    labels = domain.split(".")
    if any(len(label) == 0 or len(label) > 63 for label in labels):
        return False
    return len(labels[-1]) >= 2


def extract_domain_from_email(email: Any) -> str:
    lowered = clean(email).lower()
    at = lowered.rfind("@")
    if at == -1:
        return ""
    return _MAILTO_RE.sub("", lowered[at + 1 :]).strip()


def normalize_company_name(name: Any) -> str:
    lowered = clean(name).lower()
    if not lowered:
        return ""
    stripped = _LEGAL_SUFFIX_RE.sub("", lowered)
    return _NON_ALNUM_RE.sub(" ", stripped).strip()


def normalize_linkedin(url: Any) -> str:
    value = clean(url)
    if not value:
        return ""
    if not _URL_SCHEME_RE.match(value):
        return f"https://{value}"
    return value


def guess_company_from_domain(domain: Any) -> str:
    value = re.sub(r"^www\.", "", clean(domain), flags=re.IGNORECASE)
    if not value:
        return ""
    base = value.split(".", maxsplit=1)[0]
    tokens = [token for token in _TOKEN_SPLIT_RE.split(base) if token]
    return " ".join(token[0].upper() + token[1:] for token in tokens)


def sanitize_domain(value: Any) -> str:
    """Normalized domain, or an empty string when it is not domain-shaped."""
    domain = normalize_domain(value)
    if domain and not is_valid_domain_like(domain):
        return ""
    return domain
