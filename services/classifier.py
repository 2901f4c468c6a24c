import enum
import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

MANIFEST_MARKER = b'#EXTM3U'
UTF8_BOM = b'\xef\xbb\xbf'
BINARY_FALLBACK_TYPE = 'video/mp2t'


class ResponseKind(enum.Enum):
    MANIFEST = "manifest"
    BINARY = "binary"


@dataclass
class Classification:
    """Decided once per response; handlers dispatch on `kind`.

    `body` is set whenever the response had to be buffered to verify it, which is
    also the case for a mislabeled binary. `text` is only set for manifests.
    """
    kind: ResponseKind
    body: Optional[bytes] = None
    text: Optional[str] = None

    @property
    def buffered(self) -> bool:
        return self.body is not None


def url_path(url: str) -> str:
    try:
        return urlsplit(url).path.lower()
    except ValueError:
        return url.lower()


def is_manifest_candidate(content_type: str, url: str) -> bool:
    """Primary signal: manifest-ish content type or a .m3u8 path."""
    content_type = (content_type or '').lower()
    if 'mpegurl' in content_type or 'm3u8' in content_type:
        return True
    return url_path(url).endswith('.m3u8')


def has_manifest_marker(body: bytes) -> bool:
    """Secondary verification: the body really starts with #EXTM3U."""
    if body.startswith(UTF8_BOM):
        body = body[len(UTF8_BOM):]
    return body.lstrip().startswith(MANIFEST_MARKER)


def binary_content_type(url: str) -> str:
    """Content type used when a body labeled as a manifest turns out to be media."""
    path = url_path(url)
    if path.endswith('.mp4') or path.endswith('.m4s'):
        return 'video/mp4'
    if path.endswith('.mkv'):
        return 'video/webm'
    if path.endswith('.aac'):
        return 'audio/aac'
    return BINARY_FALLBACK_TYPE


async def classify(upstream, requested_url: str) -> Classification:
    """Classifies an upstream response as manifest or binary.

    Only 200 responses are manifest candidates. Candidates are buffered and must
    start with the manifest marker and decode as UTF-8; anything else is binary.
    Non-candidates are left unread so they can be streamed.
    """
    content_type = upstream.headers.get('Content-Type', '')
    if upstream.status != 200:
        return Classification(ResponseKind.BINARY)
    if not (is_manifest_candidate(content_type, requested_url)
            or is_manifest_candidate(content_type, upstream.url)):
        return Classification(ResponseKind.BINARY)

    body = await upstream.read()
    if not has_manifest_marker(body):
        logger.warning(f"⚠️ Binary detected in {upstream.url} (labeled as '{content_type}'). Serving as binary.")
        return Classification(ResponseKind.BINARY, body=body)

    try:
        text = body.decode('utf-8-sig')
    except UnicodeDecodeError:
        logger.warning(f"⚠️ Manifest marker present but body is not UTF-8: {upstream.url}. Serving as binary.")
        return Classification(ResponseKind.BINARY, body=body)

    return Classification(ResponseKind.MANIFEST, body=body, text=text)
