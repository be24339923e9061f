"""Unit tests for the input feed readers."""

import io

import pytest
from aiohttp import web
from aiohttp import test_utils

from models.errors import AbortError
from scraper.fetcher import fetch_all_proxy_sources, read_input_feed


def test_read_file_strips_bom(tmp_path):
    path = tmp_path / "feed.txt"
    path.write_bytes("\ufefftrojan://pw@h.example.com:443\n".encode("utf-8"))
    assert read_input_feed(path) == "trojan://pw@h.example.com:443\n"


@pytest.mark.parametrize("path", [None, "-"])
def test_read_stdin(monkeypatch, path):
    monkeypatch.setattr("sys.stdin", io.StringIO("line\n"))
    assert read_input_feed(path) == "line\n"


def test_missing_file_aborts(tmp_path):
    with pytest.raises(AbortError):
        read_input_feed(tmp_path / "missing.txt")


@pytest.mark.asyncio
async def test_fetch_skips_failed_sources():
    async def ok(request):
        return web.Response(text="trojan://pw@h.example.com:443")

    async def broken(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_get("/ok", ok)
    app.router.add_get("/broken", broken)
    server = test_utils.TestServer(app)
    await server.start_server()
    try:
        urls = [str(server.make_url("/ok")), str(server.make_url("/broken"))]
        fetched = await fetch_all_proxy_sources(urls, timeout=5)
    finally:
        await server.close()

    assert fetched == [("trojan://pw@h.example.com:443", urls[0])]


@pytest.mark.asyncio
async def test_fetch_nothing():
    assert await fetch_all_proxy_sources([], timeout=1) == []
