import asyncio
import logging
import time

import aiohttp
from aiohttp import web

from config import check_password
from services.classifier import ResponseKind, classify, binary_content_type, is_manifest_candidate, url_path
from services.manifest_rewriter import ManifestRewriter, HLS_CONTENT_TYPE
from services.upstream import UpstreamError, RedirectLimitError
from utils.url_resolver import InvalidTargetError, validate_target_url

logger = logging.getLogger(__name__)

# Headers copied from upstream on the binary path
PASSTHROUGH_HEADERS = ['content-type', 'content-range', 'accept-ranges', 'etag', 'last-modified']

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, OPTIONS',
    'Access-Control-Allow-Headers': 'Origin, X-Requested-With, Content-Type, Accept, Range',
    'Access-Control-Expose-Headers': 'Content-Length, Content-Range, Accept-Ranges',
}

NO_CACHE_HEADERS = {
    'Cache-Control': 'no-cache, no-store',
    'Pragma': 'no-cache',
    'Expires': '0',
}


def client_headers(extra=None) -> dict:
    """Headers every client-facing relay response carries."""
    headers = dict(CORS_HEADERS)
    headers.update(NO_CACHE_HEADERS)
    if extra:
        headers.update(extra)
    return headers


def error_response(status: int, text: str) -> web.Response:
    return web.Response(status=status, text=text, headers=client_headers())


def repair_content_type(content_type: str, url: str) -> str:
    """Fixes the content types players choke on for .mkv and .ts targets."""
    path = url_path(url)
    bare_type = (content_type or '').split(';')[0].strip().lower()
    if path.endswith('.mkv') and bare_type in ('', 'application/octet-stream'):
        return 'video/webm'
    if path.endswith('.ts') and not bare_type:
        return 'video/mp2t'
    return content_type


class RelayProxy:
    """Relay endpoint: fetches the target, rewrites HLS manifests and pipes everything else.

    Stateless across requests. The only shared object is the upstream client,
    which owns the connection pools.
    """

    def __init__(self, upstream, relay_path='/relay', api_password=None,
                 chunk_size=64 * 1024, rewrite_attribute_uris=False):
        self.upstream = upstream
        self.relay_path = relay_path
        self.api_password = api_password
        self.chunk_size = chunk_size
        self.rewriter = ManifestRewriter(
            relay_path=relay_path,
            api_password=api_password,
            rewrite_attribute_uris=rewrite_attribute_uris,
        )
        self.started_at = time.time()

    async def handle_relay_request(self, request):
        """Handles GET/HEAD requests on the relay path (?url=<upstream>)"""
        if not check_password(request, self.api_password):
            logger.warning(f"⛔ Access denied: Invalid or missing API Password. IP: {request.remote}")
            return error_response(401, "Unauthorized: Invalid API Password")

        try:
            target_url = validate_target_url(request.query.get('url'))
        except InvalidTargetError as e:
            logger.info(f"Rejected relay request from {request.remote}: {e}")
            return error_response(400, str(e))

        range_header = request.headers.get('Range')
        try:
            upstream = await self.upstream.fetch(target_url, range_header=range_header, method=request.method)
        except RedirectLimitError as e:
            logger.warning(f"⚠️ {e}")
            return error_response(502, f"Bad Gateway: {e}")
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ Upstream timeout: {target_url}")
            return error_response(504, "Gateway Timeout: upstream did not respond")
        except (UpstreamError, aiohttp.ClientError, OSError) as e:
            logger.warning(f"⚠️ Upstream unreachable: {target_url} ({type(e).__name__}: {e})")
            return error_response(502, f"Bad Gateway: {e}")

        if upstream.redirects:
            logger.info(f"↪️ {target_url} redirected {len(upstream.redirects)} time(s) to {upstream.url}")
        logger.debug(f"Upstream response {upstream.status} [{upstream.headers.get('Content-Type', '')}] for {upstream.url}")

        completed = False
        try:
            if request.method == 'HEAD':
                # A manifest body is rewritten on GET, so its upstream length does not apply
                content_type = upstream.headers.get('Content-Type', '')
                manifest = (is_manifest_candidate(content_type, target_url)
                            or is_manifest_candidate(content_type, upstream.url))
                response, completed = await self._stream_binary(
                    request, upstream, target_url, include_length=not manifest)
                return response

            try:
                classification = await classify(upstream, target_url)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ Upstream timeout while buffering: {target_url}")
                return error_response(504, "Gateway Timeout: upstream stalled")
            except (aiohttp.ClientError, OSError) as e:
                logger.warning(f"⚠️ Connection lost with source while buffering: {target_url} ({e})")
                return error_response(502, f"Bad Gateway: {e}")

            if classification.kind is ResponseKind.MANIFEST:
                completed = True
                return self._manifest_response(upstream, classification.text)

            if classification.buffered:
                completed = True
                return self._buffered_binary_response(upstream, classification.body, target_url)

            response, completed = await self._stream_binary(request, upstream, target_url)
            return response
        finally:
            # A partially read upstream must never go back to the pool
            if completed:
                upstream.release()
            else:
                upstream.close()

    def _manifest_response(self, upstream, manifest_content):
        rewritten = self.rewriter.rewrite(manifest_content, upstream.url)
        # Content-Length is computed by aiohttp from the rewritten bytes
        return web.Response(
            body=rewritten.encode('utf-8'),
            status=upstream.status,
            headers=client_headers({'Content-Type': HLS_CONTENT_TYPE}),
        )

    def _passthrough_headers(self, upstream, target_url, include_length):
        headers = {}
        for header in PASSTHROUGH_HEADERS:
            if header in upstream.headers:
                headers[header] = upstream.headers[header]

        # A decoded body no longer matches the upstream Content-Length
        if include_length and not upstream.decompressed and 'content-length' in upstream.headers:
            headers['content-length'] = upstream.headers['content-length']

        content_type = repair_content_type(headers.get('content-type', ''), target_url)
        if content_type:
            headers['content-type'] = content_type
        return client_headers(headers)

    def _buffered_binary_response(self, upstream, body, target_url):
        headers = self._passthrough_headers(upstream, target_url, include_length=False)
        headers['content-type'] = binary_content_type(target_url)
        return web.Response(body=body, status=upstream.status, headers=headers)

    async def _stream_binary(self, request, upstream, target_url, include_length=True):
        """Pipes the upstream body to the client with backpressure.

        Returns (response, completed). completed is False when either side went
        away before the end of the body.
        """
        response = web.StreamResponse(
            status=upstream.status,
            headers=self._passthrough_headers(upstream, target_url, include_length),
        )
        try:
            await response.prepare(request)
            if request.method != 'HEAD':
                async for chunk in upstream.iter_chunks(self.chunk_size):
                    await response.write(chunk)
            await response.write_eof()
            return response, True

        except ConnectionResetError:
            # Typical client disconnection (channel switch, seek, tab closed)
            logger.info(f"ℹ️ Client disconnected from stream: {target_url}")
            return response, False

        except asyncio.CancelledError:
            logger.info(f"ℹ️ Relay cancelled for stream: {target_url}")
            raise

        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            # Headers already sent: cut the connection so the client sees a truncated body
            logger.warning(f"⚠️ Connection lost with source mid-stream: {target_url} ({type(e).__name__}: {e})")
            response.force_close()
            if request.transport is not None:
                request.transport.close()
            return response, False

    async def handle_options(self, request):
        """Handles OPTIONS requests for CORS"""
        headers = dict(CORS_HEADERS)
        headers['Access-Control-Max-Age'] = '86400'
        return web.Response(headers=headers)

    async def handle_ping(self, request):
        return web.json_response(
            {"status": "pong", "time": int(time.time() * 1000)},
            headers=CORS_HEADERS,
        )

    async def handle_health(self, request):
        """Liveness plus the outbound pool configuration."""
        return web.json_response({
            "status": "ok",
            "uptime_seconds": int(time.time() - self.started_at),
            "upstream": self.upstream.describe(),
        }, headers=CORS_HEADERS)

    async def handle_api_info(self, request):
        """API endpoint that returns server information in JSON format."""
        info = {
            "proxy": "StreamFlix Relay",
            "version": "1.0.0",
            "status": "✅ Working",
            "features": [
                "✅ HLS manifest rewriting",
                "✅ Range / partial content passthrough",
                "✅ Internal redirect following",
                "✅ Lenient upstream TLS",
                "✅ Proxy Support (SOCKS5, HTTP/S)",
                "✅ CORS enabled"
            ],
            "relay_path": self.relay_path,
            "attribute_uri_rewriting": self.rewriter.rewrite_attribute_uris,
            "password_protected": bool(self.api_password),
            "upstream": self.upstream.describe(),
            "endpoints": {
                self.relay_path: "Stream relay - ?url=<URL>",
                "/api/proxy": "Alias of the relay path - ?url=<URL>",
                "/api/ping": "Liveness probe",
                "/api/health": "Health and pool configuration",
                "/api/info": "JSON endpoint with server information"
            },
            "usage_examples": {
                "relay": f"{self.relay_path}?url=https%3A%2F%2Fexample.com%2Flive%2F1.m3u8"
            }
        }
        return web.json_response(info, headers=CORS_HEADERS)

    async def cleanup(self):
        """Resource cleanup"""
        try:
            await self.upstream.close()
        except Exception as e:
            logger.error(f"Error during cleanup: {e}")
