import httpx
import pytest

from aibot_core.domain.exceptions import DeserializationError, NotFoundError, TransportError, ValidationError
from aibot_core.domain.work_items import RelationKind
from aibot_core.workitems.host import StaticHost
from aibot_core.workitems.rest_client import WorkItemRestClient


class SettingsStub:
    devops_base_url = "https://dev.example.com/"
    devops_organization = None
    devops_project = None
    devops_api_version = "7.1"
    http_timeout = 1.0


def _client(handler, host=None):
    host = host or StaticHost(token="tok", organization="org", project="proj")
    return WorkItemRestClient(host, SettingsStub(), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_get_work_item_builds_request_and_parses_relations():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(
            200,
            json={
                "id": 100,
                "rev": 2,
                "fields": {"System.Title": "Story"},
                "relations": [
                    {"rel": "System.LinkTypes.Hierarchy-Reverse", "url": "https://x/workItems/50"},
                ],
            },
        )

    client = _client(handler)
    item = await client.get_work_item(100)

    assert seen["url"].path == "/org/proj/_apis/wit/workItems/100"
    assert seen["url"].params["api-version"] == "7.1"
    assert seen["url"].params["$expand"] == "relations"
    assert "System.Title" in seen["url"].params["fields"].split(",")
    assert seen["auth"] == "Bearer tok"
    assert item.title == "Story"
    assert item.project_name == "proj"
    assert item.relations[0].kind is RelationKind.PARENT


@pytest.mark.asyncio
async def test_simplified_request_has_no_filters():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"id": 3, "fields": {}})

    await _client(handler).get_work_item(3, fields=None, expand_relations=False)
    assert seen["params"] == {"api-version": "7.1"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, exc_type, code",
    [
        (404, NotFoundError, "NOT_FOUND"),
        (401, TransportError, "AUTH_ERROR"),
        (403, TransportError, "AUTH_ERROR"),
        (500, TransportError, "API_ERROR"),
    ],
)
async def test_status_mapping(status, exc_type, code):
    def handler(request):
        return httpx.Response(status, json={"message": "nope"})

    with pytest.raises(exc_type) as exc_info:
        await _client(handler).get_work_item(1)
    assert exc_info.value.code == code


@pytest.mark.asyncio
async def test_invalid_body_raises_deserialization_error():
    def handler(request):
        return httpx.Response(200, text="<html>not json</html>")

    with pytest.raises(DeserializationError):
        await _client(handler).get_work_item(1)

    def no_id(request):
        return httpx.Response(200, json={"fields": {}})

    with pytest.raises(DeserializationError):
        await _client(no_id).get_work_item(1)


@pytest.mark.asyncio
async def test_network_error_maps_to_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransportError) as exc_info:
        await _client(handler).get_work_item(1)
    assert exc_info.value.code == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_missing_token_is_auth_error():
    def handler(request):
        raise AssertionError("request must not be sent")

    with pytest.raises(TransportError) as exc_info:
        await _client(handler, host=StaticHost(token="", organization="o", project="p")).get_work_item(1)
    assert exc_info.value.code == "AUTH_ERROR"


@pytest.mark.asyncio
async def test_missing_project_is_not_fabricated():
    def handler(request):
        raise AssertionError("request must not be sent")

    with pytest.raises(ValidationError):
        await _client(handler, host=StaticHost(token="t", organization="o")).get_work_item(1)
