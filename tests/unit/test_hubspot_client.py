"""
Unit tests for the HubSpot client.
"""

import json

import httpx
import pytest

from pdfqueue.config import Settings
from pdfqueue.documents import hubspot
from pdfqueue.documents.hubspot import UPLOAD_PATH, HubSpotClient, HubSpotError


class TestHubSpotClient:
    """Tests for file upload and CRM association."""

    @pytest.fixture
    def requests(self) -> list[httpx.Request]:
        return []

    @pytest.fixture
    def make_client(self, requests: list[httpx.Request]):
        def factory(status_code: int = 200, body: dict | None = None) -> HubSpotClient:
            def handler(request: httpx.Request) -> httpx.Response:
                requests.append(request)
                return httpx.Response(status_code, json=body or {})

            return HubSpotClient(
                access_token="secret-token",
                base_url="https://hubspot.test",
                transport=httpx.MockTransport(handler),
            )

        return factory

    def test_requires_access_token(self, monkeypatch):
        monkeypatch.setattr(
            hubspot,
            "get_settings",
            lambda: Settings(_env_file=None, hubspot_access_token=None),
        )

        with pytest.raises(ValueError, match="access token"):
            HubSpotClient()

    @pytest.mark.asyncio
    async def test_upload_file(self, make_client, requests):
        client = make_client(body={"id": 9001, "url": "https://files.test/quote.pdf"})

        uploaded = await client.upload_file("quote.pdf", b"%PDF-1.7")
        await client.aclose()

        assert uploaded == {"id": "9001", "url": "https://files.test/quote.pdf"}
        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == UPLOAD_PATH
        assert request.headers["Authorization"] == "Bearer secret-token"
        body = request.content
        assert b'filename="quote.pdf"' in body
        assert b"%PDF-1.7" in body
        assert b"/generated-documents" in body
        assert b'"overwrite": true' in body

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("object_type", "association_type"),
        [("contact", 202), ("companies", 190), ("Deal", 214)],
    )
    async def test_attach_to_object(self, make_client, requests, object_type, association_type):
        client = make_client(body={"id": "note-1"})

        await client.attach_to_object("9001", object_type, "1001")
        await client.aclose()

        request = requests[0]
        assert request.url.path == "/crm/v3/objects/notes"
        body = json.loads(request.content)
        assert body["properties"]["hs_attachment_ids"] == "9001"
        association = body["associations"][0]
        assert association["to"] == {"id": "1001"}
        assert association["types"][0]["associationTypeId"] == association_type

    @pytest.mark.asyncio
    async def test_attach_unsupported_type(self, make_client, requests):
        client = make_client()

        with pytest.raises(HubSpotError, match="Unsupported"):
            await client.attach_to_object("9001", "ticket", "1")

        assert requests == []
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status(self, make_client):
        client = make_client(status_code=401, body={"message": "expired token"})

        with pytest.raises(HubSpotError) as exc_info:
            await client.upload_file("quote.pdf", b"%PDF")

        assert exc_info.value.status_code == 401
        await client.aclose()
