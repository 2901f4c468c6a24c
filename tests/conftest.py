import asyncio
import gzip

import aiohttp
import pytest
from aiohttp import web
from multidict import CIMultiDict

from app import create_app
from services.upstream import UpstreamClient

LIVE_MANIFEST = "#EXTM3U\n#EXT-X-VERSION:3\nseg1.ts\nseg2.ts\n"
MOVIE_BYTES = bytes(range(256)) * 20  # 5120 bytes
TS_BYTES = b"#EXTM3U\nthis is a segment, not a manifest\n" + b"\x47" * 376
MISLABELED_BYTES = b"\x47\x40\x11\x10" + b"\x00" * 184


class Origin:
    """Local upstream media server used by the relay tests."""

    def __init__(self):
        self.requests = []
        self.server = None

    def url(self, path):
        return str(self.server.make_url(path))

    def last_headers(self):
        return self.requests[-1]

    def build_app(self):
        app = web.Application()
        routes = web.RouteTableDef()

        @web.middleware
        async def record(request, handler):
            self.requests.append(dict(request.headers))
            return await handler(request)

        @routes.get('/live/1.m3u8')
        async def live_manifest(request):
            return web.Response(text=LIVE_MANIFEST, content_type='application/vnd.apple.mpegurl')

        @routes.get('/live/seg1.ts')
        async def segment(request):
            return web.Response(body=TS_BYTES, content_type='video/mp2t')

        @routes.get('/fake/playlist.m3u8')
        async def mislabeled(request):
            return web.Response(body=MISLABELED_BYTES, content_type='application/vnd.apple.mpegurl')

        @routes.get('/vod/movie.mp4')
        async def movie(request):
            range_header = request.headers.get('Range')
            if not range_header:
                return web.Response(body=MOVIE_BYTES, content_type='video/mp4',
                                    headers={'Accept-Ranges': 'bytes', 'ETag': '"movie-1"'})
            start, end = range_header.replace('bytes=', '').split('-')
            start, end = int(start), int(end)
            if start >= len(MOVIE_BYTES):
                return web.Response(status=416, headers={'Content-Range': f'bytes */{len(MOVIE_BYTES)}'})
            return web.Response(
                status=206,
                body=MOVIE_BYTES[start:end + 1],
                content_type='video/mp4',
                headers={
                    'Accept-Ranges': 'bytes',
                    'Content-Range': f'bytes {start}-{end}/{len(MOVIE_BYTES)}',
                },
            )

        @routes.get('/vod/film.mkv')
        async def film(request):
            return web.Response(body=MOVIE_BYTES, content_type='application/octet-stream')

        @routes.get('/hop/{n}')
        async def hop(request):
            n = int(request.match_info['n'])
            if n > 0:
                raise web.HTTPFound(f'/hop/{n - 1}')
            return web.Response(text='arrived', content_type='text/plain')

        @routes.get('/loop/a')
        async def loop_a(request):
            raise web.HTTPFound('/loop/b')

        @routes.get('/loop/b')
        async def loop_b(request):
            raise web.HTTPFound(self.url('/loop/a'))

        @routes.get('/moved/index.m3u8')
        async def moved(request):
            raise web.HTTPMovedPermanently('/media/live/index.m3u8?token=abc')

        @routes.get('/media/live/index.m3u8')
        async def media_manifest(request):
            return web.Response(
                text="#EXTM3U\n#EXT-X-TARGETDURATION:6\n#EXTINF:6.0,\nchunk_1.ts\n#EXTINF:6.0,\n/other/chunk_2.ts\n",
                content_type='application/x-mpegURL',
            )

        @routes.get('/missing')
        async def missing(request):
            return web.Response(status=404, text='no such channel', headers={'X-Origin': 'yes'})

        @routes.get('/slow')
        async def slow(request):
            await asyncio.sleep(2)
            return web.Response(text='too late')

        @routes.get('/gzip/data.bin')
        async def compressed(request):
            return web.Response(
                body=gzip.compress(MOVIE_BYTES),
                headers={'Content-Type': 'application/octet-stream', 'Content-Encoding': 'gzip'},
            )

        app.middlewares.append(record)
        app.add_routes(routes)
        return app


class FakeUpstreamResponse:
    def __init__(self, url, status=200, headers=None, chunks=None, fail_after=None, interval=0.01):
        self.url = url
        self.status = status
        self.headers = CIMultiDict(headers or {'Content-Type': 'video/mp2t'})
        self.redirects = []
        self.decompressed = False
        self.chunks = chunks
        self.fail_after = fail_after
        self.interval = interval
        self.released = False
        self.closed = False

    async def read(self):
        return b''.join(self.chunks or [])

    async def iter_chunks(self, chunk_size):
        sent = 0
        while True:
            if self.fail_after is not None and sent >= self.fail_after:
                raise aiohttp.ClientPayloadError("upstream went away")
            if self.chunks is not None:
                if sent >= len(self.chunks):
                    return
                chunk = self.chunks[sent]
            else:
                # Endless live stream
                chunk = b'\x47' * 188 * 7
            # First chunk goes out at once, later ones wait `interval`
            if sent:
                await asyncio.sleep(self.interval)
            sent += 1
            yield chunk

    def release(self):
        self.released = True

    def close(self):
        self.closed = True


class FakeUpstreamClient:
    """Stands in for UpstreamClient and records every response it hands out."""

    def __init__(self, **response_kwargs):
        self.response_kwargs = response_kwargs
        self.responses = []
        self.calls = []
        self.closed = False

    async def fetch(self, url, range_header=None, method='GET'):
        self.calls.append((url, range_header, method))
        resp = FakeUpstreamResponse(url, **self.response_kwargs)
        self.responses.append(resp)
        return resp

    def describe(self):
        return {"fake": True}

    async def close(self):
        self.closed = True


@pytest.fixture
async def origin(aiohttp_server):
    origin = Origin()
    origin.server = await aiohttp_server(origin.build_app())
    return origin


@pytest.fixture
def upstream_client():
    return UpstreamClient(connect_timeout=5, read_timeout=1, max_redirects=5, limit_per_host=10)


@pytest.fixture
async def relay(aiohttp_client, upstream_client):
    app = create_app(upstream=upstream_client, relay_path='/relay', api_password='',
                     rewrite_attribute_uris=False)
    return await aiohttp_client(app)
