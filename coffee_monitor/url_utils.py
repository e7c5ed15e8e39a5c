from __future__ import annotations

from typing import Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def normalize_base_url(url: str) -> str:
    """Return ``scheme://host[/prefix]`` without a trailing slash, query or fragment."""
    url = url.strip()
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url.lstrip("/")
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


def product_page_url(base_url: str, handle: str, variant_id: str = "") -> str:
    if not handle:
        return ""
    url = f"{base_url.rstrip('/')}/products/{handle.strip('/')}"
    return f"{url}?variant={variant_id}" if variant_id else url


def build_url_with_params(base_url: str, path: str, params: Mapping[str, str]) -> str:
    if urlsplit(path).scheme in ("http", "https"):
        url = path
    else:
        url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    if not params:
        return url
    scheme, netloc, url_path, query, _ = urlsplit(url)
    merged = dict(parse_qsl(query))
    merged.update({str(key): str(value) for key, value in params.items()})
    return urlunsplit((scheme, netloc, url_path, urlencode(merged), ""))
