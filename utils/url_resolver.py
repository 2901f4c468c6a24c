import logging
import urllib.parse
from urllib.parse import urljoin, urlsplit

logger = logging.getLogger(__name__)

HTTP_SCHEMES = ('http', 'https')

# RFC 3986 reserved characters plus '%', so existing escapes survive requoting
URI_SAFE_CHARS = ":/?#[]@!$&'()*+,;=%~"


class InvalidTargetError(ValueError):
    """Raised when a relay target is missing or is not an absolute http(s) URL"""
    pass


def is_absolute_http(uri: str) -> bool:
    """True if the URI carries its own http/https scheme and a host."""
    try:
        parts = urlsplit(uri)
    except ValueError:
        return False
    return parts.scheme.lower() in HTTP_SCHEMES and bool(parts.netloc)


def validate_target_url(target_url: str) -> str:
    """Checks a client-supplied target before any upstream call is attempted.

    Returns the stripped URL. Raises InvalidTargetError for anything that is not
    a well-formed absolute http(s) URL.
    """
    if not target_url or not target_url.strip():
        raise InvalidTargetError("Missing 'url' parameter")

    target_url = target_url.strip()
    try:
        parts = urlsplit(target_url)
        # Accessing .port validates the port number
        parts.port
    except ValueError as e:
        raise InvalidTargetError(f"Malformed target URL: {e}")

    if parts.scheme.lower() not in HTTP_SCHEMES:
        raise InvalidTargetError(f"Unsupported scheme '{parts.scheme}'")
    if not parts.hostname:
        raise InvalidTargetError("Target URL has no host")
    if any(c in target_url for c in ('\r', '\n', ' ')):
        raise InvalidTargetError("Target URL contains whitespace")

    return target_url


def resolve_uri(base_uri: str, line: str) -> str:
    """Resolves a manifest line against the manifest's final URL.

    Absolute http(s) lines come back unchanged. Relative paths, absolute paths and
    protocol-relative references are resolved with standard URI rules. If
    resolution fails the original line is returned as-is.
    """
    if is_absolute_http(line):
        return line
    try:
        return urljoin(base_uri, line)
    except ValueError as e:
        logger.debug(f"Unresolvable manifest line '{line}' against {base_uri}: {e}")
        return line


def requote_uri(uri: str) -> str:
    """Percent-encodes characters that are not legal in a URI (spaces, non-ASCII).

    Already-encoded sequences and reserved delimiters are left untouched.
    """
    return urllib.parse.quote(uri, safe=URI_SAFE_CHARS)


def build_relay_url(relay_path: str, absolute_uri: str, api_password: str = None) -> str:
    """Same-origin relay URL carrying the upstream URI in the 'url' parameter."""
    relay_url = f"{relay_path}?url={urllib.parse.quote(absolute_uri, safe='')}"
    if api_password:
        relay_url += f"&api_password={urllib.parse.quote(api_password, safe='')}"
    return relay_url
