"""Turn image references found in markup into absolute, fetchable URLs."""

from __future__ import annotations

import logging
import re
from urllib.parse import quote, urljoin, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

_SCHEME_REGEX = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_FETCHABLE_SCHEMES = {"http", "https"}
_URL_SAFE = ":/?#[]@!$&'()*+,;=%~"


class NormalizationError(ValueError):
    pass


def is_placeholder(value: str) -> bool:
    """Inline data URIs are never a shareable product image."""
    return value.strip().lower().startswith("data:")


def normalize(image_ref: str, page_url: str) -> str:
    """Resolve ``image_ref`` against ``page_url`` and validate the result.

    ``//host/path`` takes the page scheme (https unless the page is http),
    ``/path`` resolves against the page origin, other relative references
    follow standard resolution against the full page URL, and absolute
    references pass through unchanged.
    """
    if image_ref is None:
        raise NormalizationError("empty image reference")
    ref = image_ref.strip()
    if not ref:
        raise NormalizationError("empty image reference")
    if is_placeholder(ref):
        raise NormalizationError("inline data URI is not a fetchable image")

    page = urlsplit(page_url)
    page_scheme = page.scheme.lower() if page.scheme.lower() in _FETCHABLE_SCHEMES else "https"

    if _SCHEME_REGEX.match(ref):
        resolved = ref
    elif ref.startswith("//"):
        resolved = f"{page_scheme}:{ref}"
    elif ref.startswith("/"):
        if not page.netloc:
            raise NormalizationError(f"cannot resolve {ref!r}: page URL {page_url!r} has no host")
        resolved = f"{page_scheme}://{page.netloc}{ref}"
    else:
        if not page.netloc:
            raise NormalizationError(f"cannot resolve {ref!r}: page URL {page_url!r} has no host")
        resolved = urljoin(page_url, ref)

    resolved = _encode_unsafe(resolved)
    _validate(resolved)
    if resolved != ref:
        logger.debug("Normalized image reference %s -> %s", ref[:100], resolved[:100])
    return resolved


def _encode_unsafe(url: str) -> str:
    """Percent-encode spaces and other unsafe characters outside the host."""
    try:
        parts = urlsplit(url)
    except ValueError as exc:
        raise NormalizationError(f"resolved URL could not be parsed: {exc}") from exc
    return urlunsplit(
        (
            parts.scheme,
            parts.netloc,
            quote(parts.path, safe=_URL_SAFE),
            quote(parts.query, safe=_URL_SAFE),
            quote(parts.fragment, safe=_URL_SAFE),
        )
    )


def _validate(url: str) -> None:
    if any(ch.isspace() for ch in url):
        raise NormalizationError(f"resolved URL contains whitespace: {url[:100]!r}")
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError as exc:
        raise NormalizationError(f"resolved URL could not be parsed: {exc}") from exc
    if parts.scheme.lower() not in _FETCHABLE_SCHEMES:
        raise NormalizationError(f"unsupported scheme {parts.scheme!r} in {url[:100]!r}")
    if not parts.hostname:
        raise NormalizationError(f"resolved URL has no host: {url[:100]!r}")
