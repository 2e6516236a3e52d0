"""Dedup keys for harvested result URLs.

The canonical form is only ever used for comparison; the URL the provider
returned is stored and displayed unchanged.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "utm_id",
        "utm_source_platform",
        "utm_creative_format",
        "utm_marketing_tactic",
        "fbclid",
        "fb_action_ids",
        "fb_action_types",
        "fb_source",
        "fb_ref",
        "gclid",
        "gclsrc",
        "dclid",
        "gbraid",
        "wbraid",
        "mc_cid",
        "mc_eid",
        "_ga",
        "_gl",
        "ref",
        "referrer",
        "source",
        "campaign",
        "medium",
        "content",
        "term",
    }
)


def canonicalize_url(raw_url: str) -> str:
    """Return the dedup key for ``raw_url``, or the input itself when it does not parse."""
    candidate = (raw_url or "").strip()
    try:
        parts = urlsplit(candidate)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return raw_url
    if not parts.scheme or not hostname:
        return raw_url

    host = hostname.lower()
    if host.startswith("www."):
        host = host[len("www."):]
    if ":" in host:
        host = f"[{host}]"
    default_port = {"http": 80, "https": 443}.get(parts.scheme.lower())
    if port is not None and port not in {default_port, 443}:
        host = f"{host}:{port}"

    path = parts.path.lower() or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]

    params = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name.lower() not in TRACKING_PARAMS
    ]
    # Case-insensitive by name, lowercase first on ties.
    params.sort(key=lambda item: (item[0].lower(), item[0].swapcase()))

    return urlunsplit(("https", host, path, urlencode(params), ""))
