"""
Component Tests for the HTTP Service Clients

content_service and notification_service clients against httpx.MockTransport.
"""

import json

import httpx
import pytest

from microservices.campaign_delivery_service.clients import ContentClient, NotificationClient
from microservices.campaign_delivery_service.protocols import TransientDeliveryError


@pytest.fixture
def http_handler(monkeypatch):
    """Route every httpx.AsyncClient the clients open through a handler"""
    real_client = httpx.AsyncClient
    requests = []

    def install(handler):
        def recording(request):
            requests.append(request)
            return handler(request)

        def client_factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(recording)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)
        return requests

    return install


class TestContentClient:

    @pytest.mark.asyncio
    async def test_article_set_featured_first(self, http_handler):
        requests = http_handler(lambda request: httpx.Response(200, json={
            "featured": {"id": "art_9"},
            "latest": [{"id": "art_1"}, {"id": "art_2"}],
        }))

        article_ids = await ContentClient("http://content:8260/").current_article_set()

        assert article_ids == ["art_9", "art_1", "art_2"]
        assert str(requests[0].url) == "http://content:8260/api/v1/newsletter/articles"

    @pytest.mark.asyncio
    async def test_article_set_without_featured(self, http_handler):
        http_handler(lambda request: httpx.Response(200, json={"featured": None, "latest": [{"id": "art_1"}]}))

        assert await ContentClient().current_article_set() == ["art_1"]

    @pytest.mark.asyncio
    async def test_compile_posts_variables(self, http_handler):
        requests = http_handler(lambda request: httpx.Response(200, json={
            "subject": "Digest", "html": "<p>{{subscriber.email}}</p>", "text": "x",
        }))

        compiled = await ContentClient("http://content").compile("weekly", {"site": {"name": "News"}})

        assert compiled.subject == "Digest"
        assert compiled.html == "<p>{{subscriber.email}}</p>"
        assert requests[0].method == "POST"
        assert requests[0].url.path == "/api/v1/email-templates/weekly/compile"
        assert json.loads(requests[0].content) == {"variables": {"site": {"name": "News"}}}

    @pytest.mark.asyncio
    async def test_compile_unknown_template_raises(self, http_handler):
        http_handler(lambda request: httpx.Response(404, json={"detail": "Template not found"}))

        with pytest.raises(httpx.HTTPStatusError):
            await ContentClient().compile("missing", {})

    @pytest.mark.asyncio
    async def test_active_recipients(self, http_handler):
        requests = http_handler(lambda request: httpx.Response(200, json={"subscribers": [
            {"id": "sub_1", "email": "ann@example.com", "name": "Ann"},
            {"id": "sub_2", "email": "bob@example.com"},
        ]}))

        recipients = await ContentClient().active_recipients()

        assert [(r.recipient_id, r.email, r.name) for r in recipients] == [
            ("sub_1", "ann@example.com", "Ann"),
            ("sub_2", "bob@example.com", None),
        ]
        assert requests[0].url.params["status"] == "active"

    @pytest.mark.asyncio
    async def test_segment_count(self, http_handler):
        http_handler(lambda request: httpx.Response(200, json={"total": 4}))

        assert await ContentClient().segment_count() == 4

    @pytest.mark.asyncio
    async def test_health_check(self, http_handler):
        http_handler(lambda request: httpx.Response(200, json={"status": "healthy"}))
        assert await ContentClient().health_check() is True

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http_handler(refuse)
        assert await ContentClient().health_check() is False


class TestNotificationClient:

    @pytest.mark.asyncio
    async def test_send_returns_notification_id(self, http_handler):
        requests = http_handler(lambda request: httpx.Response(200, json={"notification_id": "ntf_42"}))

        message_id = await NotificationClient("http://notify:8270").send(
            "ann@example.com", "Digest", "<p>Hi</p>", "Hi", {"X-Delivery-ID": "dlv_1"}
        )

        assert message_id == "ntf_42"
        body = json.loads(requests[0].content)
        assert requests[0].url.path == "/api/v1/notifications"
        assert body["channel_type"] == "email"
        assert body["recipient"] == "ann@example.com"
        assert body["content"] == {"subject": "Digest", "body_html": "<p>Hi</p>", "body_text": "Hi"}
        assert body["headers"] == {"X-Delivery-ID": "dlv_1"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [429, 500, 503])
    async def test_retryable_status_is_transient(self, http_handler, status_code):
        http_handler(lambda request: httpx.Response(status_code, text="busy"))

        with pytest.raises(TransientDeliveryError):
            await NotificationClient().send("ann@example.com", "S", "<p/>", "")

    @pytest.mark.asyncio
    async def test_rejected_request_raises_status_error(self, http_handler):
        http_handler(lambda request: httpx.Response(400, json={"detail": "invalid recipient"}))

        with pytest.raises(httpx.HTTPStatusError):
            await NotificationClient().send("not-an-email", "S", "<p/>", "")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, http_handler):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http_handler(refuse)

        with pytest.raises(TransientDeliveryError):
            await NotificationClient().send("ann@example.com", "S", "<p/>", "")
