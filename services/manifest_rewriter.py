import logging
import re

from utils.url_resolver import resolve_uri, is_absolute_http, build_relay_url, requote_uri

logger = logging.getLogger(__name__)

HLS_CONTENT_TYPE = 'application/vnd.apple.mpegurl'

# URI="..." attributes (EXT-X-KEY, EXT-X-MAP, EXT-X-MEDIA, EXT-X-I-FRAME-STREAM-INF, ...)
ATTRIBUTE_URI_RE = re.compile(r'URI="([^"]*)"')


class ManifestRewriter:
    """Rewrites an HLS manifest so every reference goes back through the relay.

    Only URI lines change. Directive and blank lines pass through untouched unless
    `rewrite_attribute_uris` is enabled, in which case the quoted URI attributes of
    directive lines are rewritten and everything else on the line is kept.
    """

    def __init__(self, relay_path: str = '/relay', api_password: str = None,
                 rewrite_attribute_uris: bool = False):
        self.relay_path = relay_path
        self.api_password = api_password
        self.rewrite_attribute_uris = rewrite_attribute_uris

    def relay_url_for(self, base_url: str, reference: str):
        """Relay URL for a manifest reference, or None when it cannot be resolved."""
        absolute = resolve_uri(base_url, reference)
        if not is_absolute_http(absolute):
            return None
        # The relay validates targets, so 'seg 1.ts' must arrive as 'seg%201.ts'
        return build_relay_url(self.relay_path, requote_uri(absolute), self.api_password)

    def _rewrite_uri_line(self, line: str, base_url: str) -> str:
        relay_url = self.relay_url_for(base_url, line.strip())
        if relay_url is None:
            logger.debug(f"Leaving unresolvable manifest line as-is: {line.strip()}")
            return line
        return relay_url

    def _rewrite_directive(self, line: str, base_url: str) -> str:
        def replace(match):
            relay_url = self.relay_url_for(base_url, match.group(1))
            if relay_url is None:
                return match.group(0)
            return f'URI="{relay_url}"'

        return ATTRIBUTE_URI_RE.sub(replace, line)

    def rewrite(self, manifest_content: str, base_url: str) -> str:
        """Rewrites manifest_content resolved against base_url (the final URL after redirects)."""
        rewritten = []
        for raw_line in manifest_content.split('\n'):
            line, ending = raw_line, ''
            if line.endswith('\r'):
                line, ending = line[:-1], '\r'

            stripped = line.strip()
            if not stripped:
                rewritten.append(raw_line)
            elif stripped.startswith('#'):
                if self.rewrite_attribute_uris and stripped.startswith('#EXT') and 'URI="' in line:
                    rewritten.append(self._rewrite_directive(line, base_url) + ending)
                else:
                    rewritten.append(raw_line)
            else:
                rewritten.append(self._rewrite_uri_line(line, base_url) + ending)

        return '\n'.join(rewritten)
