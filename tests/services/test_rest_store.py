import asyncio
import json

import httpx
import pytest

from xchat_core.core.errors import TransportError
from xchat_core.core.settings import Settings
from xchat_core.services.rest_store import RestRelayConfig, RestRowStore, load_rest_config
from xchat_core.services.row_store import STATUS_CHANNEL_ERROR

BASE_URL = "https://relay.example"


def make_config(**overrides) -> RestRelayConfig:
    values = {
        "base_url": BASE_URL,
        "table": "messages",
        "payload_column": "data",
        "id_column": "id",
        "api_key": "anon-key",
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return RestRelayConfig(**values)


def make_store(handler, **overrides) -> RestRowStore:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return RestRowStore(make_config(**overrides), client=client)


@pytest.mark.asyncio
async def test_insert_many_posts_rows_and_returns_keys():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json=[{"id": 10 + i, "data": row["data"]} for i, row in enumerate(body)])

    store = make_store(handler)
    keys = await store.insert_many([{"data": "a"}, {"data": "b"}])

    assert keys == [10, 11]
    [request] = seen
    assert request.method == "POST"
    assert request.url.path == "/rest/v1/messages"
    assert json.loads(request.content) == [{"data": "a"}, {"data": "b"}]
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"
    assert request.headers["Prefer"] == "return=representation"
    await store.aclose()


@pytest.mark.asyncio
async def test_insert_returns_single_key():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json=[{"id": 7, "data": "x"}])

    store = make_store(handler)
    assert await store.insert({"data": "x"}) == 7


@pytest.mark.asyncio
async def test_select_all_requests_ordered_columns():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": 1, "data": "one"}, {"id": 2, "data": "two"}])

    store = make_store(handler)
    rows = await store.select_all()

    assert rows == [{"id": 1, "data": "one"}, {"id": 2, "data": "two"}]
    params = seen[0].url.params
    assert params["select"] == "id,data"
    assert params["order"] == "id.asc"


@pytest.mark.asyncio
async def test_custom_columns_are_used_throughout():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"msg_id": 3, "payload": "p"}])

    store = make_store(handler, table="chat", payload_column="payload", id_column="msg_id")
    rows = await store.select_all()
    await store.delete(3)

    assert store.id_field == "msg_id"
    assert rows[0][store.payload_field] == "p"
    assert seen[0].url.path == "/rest/v1/chat"
    assert seen[0].url.params["select"] == "msg_id,payload"
    assert seen[1].url.params["msg_id"] == "eq.3"


@pytest.mark.asyncio
async def test_delete_filters_on_primary_key():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    store = make_store(handler)
    await store.delete(42)

    assert seen[0].method == "DELETE"
    assert seen[0].url.params["id"] == "eq.42"


@pytest.mark.asyncio
async def test_requests_without_api_key_carry_no_auth_headers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    store = make_store(handler, api_key=None)
    await store.select_all()

    assert "apikey" not in seen[0].headers
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_error_status_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    store = make_store(handler)
    with pytest.raises(TransportError):
        await store.select_all()
    with pytest.raises(TransportError):
        await store.insert({"data": "x"})
    with pytest.raises(TransportError):
        await store.delete(1)


@pytest.mark.asyncio
async def test_network_failure_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    store = make_store(handler)
    with pytest.raises(TransportError):
        await store.select_all()


@pytest.mark.asyncio
async def test_unexpected_select_body_raises_transport_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"not": "a list"})

    store = make_store(handler)
    with pytest.raises(TransportError):
        await store.select_all()


@pytest.mark.asyncio
async def test_subscription_reports_channel_error():
    store = make_store(lambda request: httpx.Response(200, json=[]))
    statuses = []

    subscription = await store.subscribe_insert(lambda row: None, statuses.append)
    await asyncio.sleep(0)

    assert statuses == [STATUS_CHANNEL_ERROR]
    await subscription.close()


def test_missing_relay_url_is_rejected():
    with pytest.raises(ValueError):
        RestRowStore(make_config(base_url=""))


def test_config_is_loaded_from_settings():
    source = Settings(relay_url="https://abc.supabase.co/chat_rows/", relay_api_key="k")

    config = load_rest_config(source)

    assert config.base_url == "https://abc.supabase.co"
    assert config.table == "chat_rows"
    assert config.api_key == "k"
