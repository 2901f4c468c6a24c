import logging
import ssl
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector, DummyCookieJar
from aiohttp_socks import ProxyConnector

from config import DEFAULT_USER_AGENT, get_proxy_for_url
from utils.url_resolver import is_absolute_http

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = (301, 302, 303, 307, 308)


class UpstreamError(Exception):
    """Upstream could not be reached or answered unusably"""
    pass


class RedirectLimitError(UpstreamError):
    """Redirect chain too long or cyclic"""
    pass


def create_lenient_ssl_context():
    """TLS context for the outbound leg only: accepts self-signed and mismatched certificates."""
    ssl_context = ssl.create_default_context()
    ssl_context.check_hostname = False
    ssl_context.verify_mode = ssl.CERT_NONE
    return ssl_context


class UpstreamResponse:
    """Normalized upstream response: status, headers, final URL and the body stream.

    The caller owns it and must call release() after a complete read or close()
    when abandoning it.
    """

    def __init__(self, response, redirects=None):
        self._response = response
        self.status = response.status
        self.headers = response.headers
        self.url = str(response.url)
        self.redirects = redirects or []

    @property
    def decompressed(self) -> bool:
        # aiohttp transparently decodes gzip/deflate/br bodies
        return self.headers.get('Content-Encoding', 'identity').strip().lower() != 'identity'

    async def read(self) -> bytes:
        return await self._response.read()

    def iter_chunks(self, chunk_size: int):
        return self._response.content.iter_chunked(chunk_size)

    def release(self):
        """Returns the connection to the pool."""
        self._response.release()

    def close(self):
        """Drops the underlying connection immediately."""
        self._response.close()


class UpstreamClient:
    """Outbound HTTP(S) client shared by every relay request.

    Holds one keep-alive session for direct connections and one per egress proxy.
    Created once at startup and closed from the application cleanup hook.
    """

    def __init__(self, user_agent=DEFAULT_USER_AGENT, connect_timeout=30, read_timeout=60,
                 max_redirects=5, pool_limit=0, limit_per_host=20, read_bufsize=4 * 1024 * 1024,
                 verify_tls=False, global_proxies=None, transport_routes=None):
        self.user_agent = user_agent
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.max_redirects = max_redirects
        self.pool_limit = pool_limit
        self.limit_per_host = limit_per_host
        self.read_bufsize = read_bufsize
        self.verify_tls = verify_tls
        self.global_proxies = global_proxies or []
        self.transport_routes = transport_routes or []

        # Shared session for direct connections
        self.session = None

        # Cache for proxy sessions (proxy_url -> session)
        self.proxy_sessions = {}

    def _ssl_setting(self):
        return True if self.verify_tls else create_lenient_ssl_context()

    def _timeout(self):
        # No total timeout: live sessions run for hours
        return ClientTimeout(total=None, connect=self.connect_timeout, sock_read=self.read_timeout)

    def _new_session(self, connector):
        return ClientSession(
            timeout=self._timeout(),
            connector=connector,
            cookie_jar=DummyCookieJar(),
            read_bufsize=self.read_bufsize,
            auto_decompress=True,
        )

    def _connector_kwargs(self):
        return {
            'limit': self.pool_limit,
            'limit_per_host': self.limit_per_host,
            'keepalive_timeout': 60,
            'ssl': self._ssl_setting(),
        }

    async def _get_session(self):
        if self.session is None or self.session.closed:
            connector = TCPConnector(
                enable_cleanup_closed=True,
                use_dns_cache=True,
                **self._connector_kwargs()
            )
            self.session = self._new_session(connector)
        return self.session

    async def _get_session_for_url(self, url: str):
        """Session routed according to GLOBAL_PROXY / TRANSPORT_ROUTES, direct otherwise."""
        proxy = get_proxy_for_url(url, self.transport_routes, self.global_proxies)

        if proxy:
            cached_session = self.proxy_sessions.get(proxy)
            if cached_session is not None and not cached_session.closed:
                logger.debug(f"♻️ Reusing cached proxy session: {proxy}")
                return cached_session

            logger.info(f"🌍 Creating proxy session: {proxy}")
            connector = ProxyConnector.from_url(proxy, **self._connector_kwargs())
            session = self._new_session(connector)
            self.proxy_sessions[proxy] = session
            return session

        return await self._get_session()

    def build_headers(self, range_header: str = None) -> dict:
        headers = {
            'User-Agent': self.user_agent,
            'Accept': '*/*',
            'Connection': 'keep-alive',
        }
        if range_header:
            headers['Range'] = range_header
        return headers

    async def fetch(self, url: str, range_header: str = None, method: str = 'GET') -> UpstreamResponse:
        """Fetches url, following redirects internally up to max_redirects hops.

        Non-2xx statuses are returned as-is. Raises RedirectLimitError when the
        chain is too long or loops, UpstreamError for unusable redirects, and lets
        aiohttp connection/timeout errors propagate.
        """
        headers = self.build_headers(range_header)
        current_url = url
        visited = [url]

        while True:
            session = await self._get_session_for_url(current_url)
            resp = await session.request(method, current_url, headers=headers, allow_redirects=False)

            location = resp.headers.get('Location')
            if resp.status not in REDIRECT_STATUSES or not location:
                return UpstreamResponse(resp, redirects=visited[:-1])

            resp.release()

            if len(visited) > self.max_redirects:
                raise RedirectLimitError(
                    f"Too many redirects (>{self.max_redirects}) starting from {url}"
                )

            try:
                next_url = urljoin(current_url, location)
            except ValueError as e:
                raise UpstreamError(f"Invalid redirect Location '{location}': {e}")

            if not is_absolute_http(next_url):
                raise UpstreamError(f"Redirect to unsupported location: {next_url}")
            if next_url in visited:
                raise RedirectLimitError(f"Redirect loop detected at {next_url}")

            logger.debug(f"↪️ Upstream redirect {resp.status}: {current_url} -> {next_url}")
            visited.append(next_url)
            current_url = next_url

    async def close(self):
        """Resource cleanup"""
        if self.session and not self.session.closed:
            await self.session.close()

        for proxy_url, session in list(self.proxy_sessions.items()):
            if session and not session.closed:
                await session.close()
        self.proxy_sessions.clear()

    def describe(self) -> dict:
        return {
            "max_redirects": self.max_redirects,
            "pool_limit": self.pool_limit,
            "limit_per_host": self.limit_per_host,
            "connect_timeout": self.connect_timeout,
            "read_timeout": self.read_timeout,
            "verify_tls": self.verify_tls,
            "global_proxies": len(self.global_proxies),
            "transport_routes": len(self.transport_routes),
            "open_proxy_sessions": len(self.proxy_sessions),
        }
