import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from fanslyrecorder.errors import ApiError
from fanslyrecorder.fansly_api import FanslyAPI


async def account(request):
    if request.query.get('usernames') == "alice":
        return web.json_response({'success': True, 'response': [{'id': 123}]})
    return web.json_response({'success': True, 'response': []})


async def channel(request):
    if request.headers.get('Authorization') != "token":
        return web.json_response({'success': False}, status=401)
    return web.json_response({
        'success': True,
        'response': {
            'chatRoomId': 'room-1',
            'stream': {
                'id': 's1',
                'historyId': 'h1',
                'title': 'hello',
                'status': 2,
                'access': True,
                'playbackUrl': 'https://x/live.m3u8',
                'version': 3.0,
            },
        },
    })


@pytest_asyncio.fixture
async def server():
    app = web.Application()
    app.router.add_get("/api/v1/account", account)
    app.router.add_get("/api/v1/streaming/channel/{creator_id}", channel)
    test_server = test_utils.TestServer(app)
    await test_server.start_server()
    yield test_server
    await test_server.close()


def make_api(server, token="token"):
    api = FanslyAPI(token, "ua", timeout=5)
    api.BASE_URL = str(server.make_url("/api/v1"))
    return api


@pytest.mark.asyncio
async def test_get_account_id(server):
    api = make_api(server)
    try:
        assert await api.get_account_id("alice") == "123"
        with pytest.raises(ApiError):
            await api.get_account_id("nobody")
    finally:
        await api.disconnect()


@pytest.mark.asyncio
async def test_get_stream_data(server):
    api = make_api(server)
    try:
        data = await api.get_stream_data("123")
    finally:
        await api.disconnect()

    assert data.chat_room_id == "room-1"
    assert data.stream_id == "s1"
    assert data.stream_version == "3"
    assert data.playback_url == "https://x/live.m3u8"


@pytest.mark.asyncio
async def test_http_error_raises_api_error(server):
    api = make_api(server, token="wrong")
    try:
        with pytest.raises(ApiError, match="401"):
            await api.get_stream_channel("123")
    finally:
        await api.disconnect()
