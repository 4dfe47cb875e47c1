#Filename: routing.py
"""
TARGET RESOLUTION & ROUTE REWRITING
Validates the per-request destination and builds the outbound
path+query. Pure functions, no network I/O.
"""

import re
from typing import List, Optional, Tuple
from urllib.parse import parse_qsl, quote, urlencode, urlsplit

from structures import TargetURL, MergedRoute, TARGET_PARAM
from relay_common import MissingTargetError, InvalidTargetError

SUPPORTED_SCHEMES = ('http', 'https', 'ws', 'wss')
PREFLIGHT_METHOD = 'OPTIONS'

# RFC 3986 sub-delims, gen-delims allowed in each component, and "%" so
# existing escapes survive re-quoting.
PATH_SAFE = "/%:@!$&'()*+,;=~"
QUERY_SAFE = PATH_SAFE + "?"
HOST_PATTERN = re.compile(r'^[A-Za-z0-9._:-]+$')


def split_query(raw_query: str) -> List[Tuple[str, str]]:
    """Parses a query string into ordered pairs. Repeated keys and blank values are kept."""
    if not raw_query:
        return []
    return parse_qsl(raw_query, keep_blank_values=True)


def find_param(params: List[Tuple[str, str]], key: str) -> Optional[str]:
    for k, v in params:
        if k == key:
            return v
    return None


def parse_target(raw: str) -> TargetURL:
    """
    Parses an absolute destination URL.
    Raises InvalidTargetError unless scheme and host are present and the port parses.
    Path and query are re-quoted as UTF-8 so the request line is pure ASCII;
    escapes already present are left alone.
    """
    candidate = raw.strip()
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError as exc:
        raise InvalidTargetError(raw) from exc

    scheme = parts.scheme.lower()
    if scheme not in SUPPORTED_SCHEMES or not parts.hostname:
        raise InvalidTargetError(raw)
    if any(c in candidate for c in ('\r', '\n', '\t')):
        raise InvalidTargetError(raw)

    host = encode_host(parts.hostname, raw)
    path = quote(parts.path, safe=PATH_SAFE) or '/'
    query = quote(parts.query, safe=QUERY_SAFE)

    default_port = 443 if scheme in ('https', 'wss') else 80
    return TargetURL(
        raw=raw,
        scheme=scheme,
        host=host,
        port=port if port is not None else default_port,
        path=path,
        query=query,
        query_params=split_query(query)
    )


def encode_host(hostname: str, raw: str) -> str:
    """ASCII form of a destination host. Internationalized names are punycoded."""
    try:
        host = hostname.encode('idna').decode('ascii')
    except UnicodeError as exc:
        raise InvalidTargetError(raw) from exc
    if not HOST_PATTERN.match(host):
        raise InvalidTargetError(raw)
    return host


def resolve_target(
    method: str,
    query_params: List[Tuple[str, str]],
    target_key: str = TARGET_PARAM
) -> Optional[TargetURL]:
    """
    Extracts the destination from the caller's query parameters.
    Returns None for a preflight probe of the gateway itself (OPTIONS without
    a destination), which is answered locally.
    """
    raw = find_param(query_params, target_key)
    if not raw:
        if method.upper() == PREFLIGHT_METHOD:
            return None
        raise MissingTargetError()
    return parse_target(raw)


def merge_route(
    target: TargetURL,
    query_params: List[Tuple[str, str]],
    target_key: str = TARGET_PARAM
) -> MergedRoute:
    """
    Builds the outbound path+query.
    The destination's own query is kept verbatim and always wins; caller
    parameters whose key the destination does not already carry are appended
    in caller order. The destination indicator itself is never copied.
    """
    existing = {k for k, _ in target.query_params}
    extra = [(k, v) for k, v in query_params if k != target_key and k not in existing]

    query = target.query
    if extra:
        encoded = urlencode(extra)
        query = f"{query}&{encoded}" if query else encoded
    return MergedRoute(target.path, query)
