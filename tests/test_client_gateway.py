import asyncio

import httpx
import pytest

from chatcanvas.client.gateway import ChatCanvasGateway
from chatcanvas.utils.error_util import (
    AuthorizationError,
    ImageReferenceError,
    InsufficientCreditError,
    PersistenceError,
    ProviderError,
    TransientNetworkError,
)


def make_gateway(handler):
    client = httpx.AsyncClient(
        base_url="https://api.chatcanvas.test",
        headers={"Authorization": "Bearer cc-test"},
        transport=httpx.MockTransport(handler),
    )
    return ChatCanvasGateway("https://api.chatcanvas.test", "cc-test", client=client)


def call(gateway, method, *args):
    async def run():
        try:
            return await getattr(gateway, method)(*args)
        finally:
            await gateway.aclose()

    return asyncio.run(run())


def test_successful_response_is_unwrapped():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"status": "success", "conversations": [{"id": "c1"}]})

    assert call(make_gateway(handler), "list_conversations") == [{"id": "c1"}]
    assert seen[0].headers["Authorization"] == "Bearer cc-test"
    assert seen[0].url.path == "/chat/conversations"


def test_insufficient_credit_body_becomes_error():
    def handler(request):
        return httpx.Response(
            402,
            json={"status": "error", "error_type": "insufficient_credit", "message": "Need credits", "current_balance": 0},
        )

    with pytest.raises(InsufficientCreditError) as excinfo:
        call(make_gateway(handler), "run_agent", "c1", "draw a cat")
    assert excinfo.value.balance == 0
    assert excinfo.value.message == "Need credits"


def test_error_kinds_follow_error_type():
    def handler(request):
        return httpx.Response(400, json={"status": "error", "error_type": "invalid_image_reference", "message": "bad"})

    with pytest.raises(ImageReferenceError):
        call(make_gateway(handler), "get_task", "t1")


def test_failed_task_response_becomes_provider_error():
    def handler(request):
        return httpx.Response(
            500, json={"task_id": "t1", "status": "failed", "error": "boom", "error_type": "provider_error"}
        )

    with pytest.raises(ProviderError) as excinfo:
        call(make_gateway(handler), "get_task", "t1")
    assert excinfo.value.task_id == "t1"
    assert excinfo.value.message == "boom"


def test_untyped_errors_fall_back_to_status_code():
    def unauthorized(request):
        return httpx.Response(401, json={"status": "error", "error_type": "unauthorized", "message": "Authentication required."})

    with pytest.raises(AuthorizationError):
        call(make_gateway(unauthorized), "list_conversations")

    def broken(request):
        return httpx.Response(502, text="<html>Bad gateway</html>")

    with pytest.raises(PersistenceError):
        call(make_gateway(broken), "list_conversations")


def test_transport_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientNetworkError):
        call(make_gateway(handler), "list_conversations")


def test_upload_sends_multipart_file():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"status": "success", "image_url": "https://res.cloudinary.com/demo/a.png"})

    url = call(make_gateway(handler), "upload_image", "a.png", b"\x89PNG", "image/png")

    assert url == "https://res.cloudinary.com/demo/a.png"
    assert seen[0].headers["Content-Type"].startswith("multipart/form-data")
    assert b'filename="a.png"' in seen[0].read()
