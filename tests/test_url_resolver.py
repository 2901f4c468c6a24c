import pytest

from utils.url_resolver import (
    InvalidTargetError, build_relay_url, is_absolute_http, requote_uri, resolve_uri, validate_target_url,
)

BASE = 'http://origin.example/live/channel/index.m3u8?token=abc'


@pytest.mark.parametrize('line, expected', [
    ('seg1.ts', 'http://origin.example/live/channel/seg1.ts'),
    ('sub/seg1.ts?x=1', 'http://origin.example/live/channel/sub/seg1.ts?x=1'),
    ('../seg1.ts', 'http://origin.example/live/seg1.ts'),
    ('/vod/seg1.ts', 'http://origin.example/vod/seg1.ts'),
    ('//cdn.example/seg1.ts', 'http://cdn.example/seg1.ts'),
    ('https://other.example/a.ts', 'https://other.example/a.ts'),
    ('HTTP://Other.example/A.ts', 'HTTP://Other.example/A.ts'),
])
def test_resolve_uri(line, expected):
    assert resolve_uri(BASE, line) == expected


def test_resolve_uri_falls_back_to_original_line():
    line = 'http://[::1/broken.ts'
    assert resolve_uri(BASE, line) == line


def test_is_absolute_http():
    assert is_absolute_http('https://a.example/x')
    assert not is_absolute_http('/x')
    assert not is_absolute_http('ftp://a.example/x')
    assert not is_absolute_http('http://[::1/x')


def test_validate_target_url_strips_whitespace():
    assert validate_target_url('  http://origin.example/a.m3u8 ') == 'http://origin.example/a.m3u8'


@pytest.mark.parametrize('target', [
    None, '', '   ', 'origin.example/a.ts', 'file:///etc/passwd', 'http:///path-only',
    'http://origin.example:70000/a.ts', 'http://[::1/a.ts', 'http://origin.example/a b.ts',
])
def test_validate_target_url_rejects(target):
    with pytest.raises(InvalidTargetError):
        validate_target_url(target)


def test_build_relay_url_encodes_everything():
    url = 'http://origin/live/seg1.ts?a=1&b=2'
    assert build_relay_url('/relay', url) == '/relay?url=http%3A%2F%2Forigin%2Flive%2Fseg1.ts%3Fa%3D1%26b%3D2'


def test_build_relay_url_with_password():
    assert build_relay_url('/relay', 'http://o/a.ts', 'p&w') == '/relay?url=http%3A%2F%2Fo%2Fa.ts&api_password=p%26w'


@pytest.mark.parametrize('uri, expected', [
    ('http://origin.example/live/seg 1.ts', 'http://origin.example/live/seg%201.ts'),
    ('http://origin.example/a%20b.ts?x=1&y=2#t', 'http://origin.example/a%20b.ts?x=1&y=2#t'),
    ('http://origin.example/canal/señal.ts', 'http://origin.example/canal/se%C3%B1al.ts'),
])
def test_requote_uri(uri, expected):
    assert requote_uri(uri) == expected
