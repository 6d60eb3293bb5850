"""
HubSpot file upload and CRM association.
"""

import json
import logging
from typing import Any

import httpx

from pdfqueue.config import get_settings

logger = logging.getLogger(__name__)

UPLOAD_PATH = "/files/v3/files"
DEFAULT_FOLDER_PATH = "/generated-documents"

# Note -> object association type ids
NOTE_ASSOCIATION_TYPES = {
    "contact": 202,
    "contacts": 202,
    "company": 190,
    "companies": 190,
    "deal": 214,
    "deals": 214,
}


class HubSpotError(Exception):
    """A HubSpot API call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class HubSpotClient:
    """Async HubSpot API client covering the calls the PDF handler needs."""

    def __init__(
        self,
        access_token: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        token = access_token or settings.hubspot_access_token
        if not token:
            raise ValueError("HubSpot access token is required")

        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.hubspot_api_url).rstrip("/"),
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise HubSpotError(f"HubSpot request failed: {e}") from e

        if not response.is_success:
            raise HubSpotError(
                f"HubSpot {method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    async def upload_file(
        self,
        filename: str,
        content: bytes,
        folder_path: str = DEFAULT_FOLDER_PATH,
        access: str = "PRIVATE",
        overwrite: bool = True,
    ) -> dict[str, Any]:
        """
        Upload a file to HubSpot Files.

        Overwriting by default keeps a retried upload from creating a second copy.

        Returns:
            {"id": ..., "url": ...} of the stored file.
        """
        response = await self._request(
            "POST",
            UPLOAD_PATH,
            files={"file": (filename, content, "application/pdf")},
            data={
                "folderPath": folder_path,
                "options": json.dumps({"access": access, "overwrite": overwrite}),
            },
        )
        body = response.json()
        logger.info("Uploaded file to HubSpot", extra={"file_id": body.get("id"), "file_name": filename})
        return {"id": str(body["id"]), "url": body.get("url")}

    async def attach_to_object(self, file_id: str, object_type: str, object_id: str) -> None:
        """
        Attach an uploaded file to a CRM record through a note.

        Args:
            file_id: Id returned by upload_file.
            object_type: "contact", "deal" or "company".
            object_id: The CRM record id.
        """
        association_type = NOTE_ASSOCIATION_TYPES.get(object_type.lower())
        if association_type is None:
            raise HubSpotError(f"Unsupported HubSpot object type: {object_type}")

        await self._request(
            "POST",
            "/crm/v3/objects/notes",
            json={
                "properties": {
                    "hs_attachment_ids": file_id,
                    "hs_note_body": "Generated document",
                },
                "associations": [
                    {
                        "to": {"id": object_id},
                        "types": [
                            {
                                "associationCategory": "HUBSPOT_DEFINED",
                                "associationTypeId": association_type,
                            }
                        ],
                    }
                ],
            },
        )
        logger.info(
            "Attached file to HubSpot object",
            extra={"file_id": file_id, "object_type": object_type, "object_id": object_id},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
