"""
Typed wrapper around the ingestion service endpoints.

Maps upload, status, list, delete, download and chat onto
ResilientHttpClient and parses the JSON bodies into docsync types.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .config import EndpointConfig
from .errors import MalformedResponseError
from .http_client import ResilientHttpClient
from .types import (
    ChatReply,
    DocumentRecord,
    DocumentStatus,
    StatusReport,
    UploadFile,
    UploadResult,
    utc_now,
)

logger = logging.getLogger(__name__)


def parse_status(value: Any) -> DocumentStatus:
    try:
        return DocumentStatus(str(value).lower())
    except ValueError:
        raise MalformedResponseError(f"Unknown document status: {value!r}") from None


def _expect_dict(data: Any, what: str) -> dict:
    if not isinstance(data, dict):
        raise MalformedResponseError(f"{what}: expected a JSON object, got {type(data).__name__}")
    return data


class IngestionService:
    """Client-side contract of the remote ingestion and chat service."""

    def __init__(self, http: ResilientHttpClient, endpoints: Optional[EndpointConfig] = None):
        self._http = http
        self._endpoints = endpoints or EndpointConfig()

    def _path(self, template: str, document_id: str = "") -> str:
        return template.format(id=document_id)

    async def upload(self, file: UploadFile, category: str) -> UploadResult:
        """POST multipart file + category -> UploadResult."""
        data = _expect_dict(
            await self._http.request_json(
                "POST",
                self._endpoints.upload,
                files={"file": (file.name, file.content, file.mime_type)},
                data={"category": category},
            ),
            "upload",
        )
        if not data.get("success"):
            return UploadResult(success=False, error=data.get("error") or "Upload rejected")

        document_id = data.get("documentId")
        if not document_id:
            # Some deployments answer with the created documents instead
            docs = data.get("documents") or []
            if docs and isinstance(docs[0], dict):
                document_id = docs[0].get("id")
        if not document_id:
            raise MalformedResponseError("upload: success response without a document id")
        return UploadResult(
            success=True,
            document_id=str(document_id),
            message=data.get("message"),
        )

    async def status(self, document_id: str) -> StatusReport:
        data = _expect_dict(
            await self._http.request_json("GET", self._path(self._endpoints.status, document_id)),
            "status",
        )
        if "status" not in data:
            raise MalformedResponseError("status: response has no 'status' field")
        progress = data.get("progress")
        return StatusReport(
            id=str(data.get("id", document_id)),
            status=parse_status(data["status"]),
            progress=int(progress) if progress is not None else None,
            message=data.get("message") or data.get("error"),
        )

    async def list_documents(self) -> list[DocumentRecord]:
        data = await self._http.request_json("GET", self._endpoints.list)
        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("documents", [])
        if not isinstance(data, list):
            raise MalformedResponseError("list: expected a JSON array")

        records = []
        for item in data:
            item = _expect_dict(item, "list item")
            try:
                records.append(DocumentRecord(
                    id=str(item["id"]),
                    name=item["name"],
                    mime_type=item.get("type", "application/octet-stream"),
                    size_bytes=int(item.get("size", 0)),
                    category=item.get("category", "Other"),
                    upload_timestamp=item.get("uploadDate") or utc_now(),
                    status=parse_status(item.get("status", "ready")),
                    url=item.get("url"),
                ))
            except KeyError as e:
                raise MalformedResponseError(f"list item missing field {e}") from e
        return records

    async def delete(self, document_id: str) -> bool:
        """DELETE the document. Returns the service's success flag."""
        resp = await self._http.request("DELETE", self._path(self._endpoints.delete, document_id))
        if not resp.content:
            return True
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError("delete: non-JSON success response") from e
        if isinstance(data, dict):
            if not data.get("success", True):
                logger.warning("Service refused delete of %s: %s", document_id, data.get("message"))
                return False
        return True

    async def download(self, document_id: str) -> bytes:
        resp = await self._http.request("GET", self._path(self._endpoints.download, document_id))
        return resp.content

    async def chat(self, message: str, session_id: Optional[str] = None) -> ChatReply:
        payload: dict[str, Any] = {"message": message}
        if session_id:
            payload["sessionId"] = session_id
        data = _expect_dict(
            await self._http.request_json("POST", self._endpoints.chat, json=payload),
            "chat",
        )
        return ChatReply(
            success=bool(data.get("success", False)),
            response=data.get("response") or "",
            session_id=data.get("sessionId"),
            error=data.get("error"),
        )
