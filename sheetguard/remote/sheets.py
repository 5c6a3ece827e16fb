"""
Sheets API v4 implementation of the remote document service.

API Documentation: https://developers.google.com/sheets/api/reference/rest
Per-user quota: 60 read and 60 write requests per minute.

Only translates calls and errors. Retries, rate limiting, caching and
circuit breaking live in ResilientDocumentService.
"""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, TypeVar
from urllib.parse import quote

import httpx
from loguru import logger

from sheetguard.remote.base import (
    BATCH_UPDATE,
    METADATA_GET,
    VALUES_GET,
    RemoteDocumentService,
)
from sheetguard.remote.models import (
    BatchUpdateResult,
    DocumentMetadata,
    Region,
    SheetProperties,
    ValueRange,
)
from sheetguard.services.deadline import Deadline
from sheetguard.services.errors import (
    PermanentRemoteError,
    RateLimitError,
    RequestTimeoutError,
    TransientRemoteError,
)

T = TypeVar("T")

TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given either as seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _sheet_properties(sheet: dict[str, Any]) -> SheetProperties:
    props = sheet.get("properties", {})
    grid = props.get("gridProperties", {})
    return SheetProperties(
        sheet_id=props.get("sheetId", 0),
        title=props.get("title", ""),
        row_count=grid.get("rowCount", 0),
        column_count=grid.get("columnCount", 0),
    )


def _parse_reply(endpoint: str, response: httpx.Response, build: Callable[[Any], T]) -> T:
    """
    Build a model from a 2xx reply body.

    A body that is not JSON or does not have the expected shape is a
    PermanentRemoteError; the call may still have taken effect upstream.
    """
    try:
        return build(response.json())
    except (ValueError, TypeError, AttributeError) as e:
        # json and pydantic validation errors are both ValueErrors
        raise PermanentRemoteError(
            f"Malformed {endpoint} reply (HTTP {response.status_code}): {e}",
            service_id=endpoint,
            status_code=response.status_code,
        ) from e


class SheetsApiClient(RemoteDocumentService):
    """
    Thin async client for the Sheets v4 REST API.

    Usage:
        remote = SheetsApiClient(token="ya29...")
        values = await remote.get_values("doc-id", Region(sheet_title="Data"))
        await remote.close()
    """

    BASE_URL = "https://sheets.googleapis.com"
    SERVICE_ID = "sheets"

    def __init__(
        self,
        token: str = "",
        base_url: str | None = None,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token = token
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self._timeout = timeout
        self._http_client = http_client

    @property
    def service_id(self) -> str:
        return self.SERVICE_ID

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=headers,
            )
        return self._http_client

    async def get_values(
        self,
        document_id: str,
        region: Region,
        *,
        value_render: str = "FORMULA",
        deadline: Deadline | None = None,
    ) -> ValueRange:
        response = await self._execute_request(
            endpoint=VALUES_GET,
            method="GET",
            url=(
                f"{self.base_url}/v4/spreadsheets/{document_id}/values/"
                f"{quote(region.to_a1(), safe='')}"
            ),
            params={"valueRenderOption": value_render},
            deadline=deadline,
        )
        return _parse_reply(
            VALUES_GET,
            response,
            lambda data: ValueRange(region=region, values=data.get("values", [])),
        )

    async def get_metadata(
        self, document_id: str, *, deadline: Deadline | None = None
    ) -> DocumentMetadata:
        response = await self._execute_request(
            endpoint=METADATA_GET,
            method="GET",
            url=f"{self.base_url}/v4/spreadsheets/{document_id}",
            params={"fields": "spreadsheetId,sheets.properties"},
            deadline=deadline,
        )
        return _parse_reply(
            METADATA_GET,
            response,
            lambda data: DocumentMetadata(
                document_id=document_id,
                version=response.headers.get("etag"),
                sheets=[_sheet_properties(sheet) for sheet in data.get("sheets", [])],
            ),
        )

    async def batch_update(
        self,
        document_id: str,
        requests: list[dict[str, Any]],
        *,
        deadline: Deadline | None = None,
    ) -> BatchUpdateResult:
        response = await self._execute_request(
            endpoint=BATCH_UPDATE,
            method="POST",
            url=f"{self.base_url}/v4/spreadsheets/{document_id}:batchUpdate",
            json_data={"requests": requests},
            deadline=deadline,
        )
        return _parse_reply(
            BATCH_UPDATE,
            response,
            lambda data: BatchUpdateResult(
                document_id=document_id, replies=data.get("replies", [])
            ),
        )

    async def _execute_request(
        self,
        endpoint: str,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        deadline: Deadline | None = None,
    ) -> httpx.Response:
        """Execute the actual HTTP request and map failures onto the error taxonomy."""
        client = await self._get_http_client()

        timeout = self._timeout
        remaining = deadline.remaining() if deadline else None
        if remaining is not None:
            timeout = min(timeout, remaining)

        try:
            response = await client.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                timeout=timeout,
            )
            response.raise_for_status()
            return response

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(endpoint, timeout) from e

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:200]
            if status == 429:
                retry_after = parse_retry_after(e.response.headers.get("retry-after"))
                raise RateLimitError(endpoint, retry_after) from e
            if status in TRANSIENT_STATUS_CODES:
                raise TransientRemoteError(
                    f"HTTP {status}: {body}", service_id=endpoint, status_code=status
                ) from e
            logger.debug(f"[{self.SERVICE_ID}] {endpoint} rejected with HTTP {status}")
            raise PermanentRemoteError(
                f"HTTP {status}: {body}", service_id=endpoint, status_code=status
            ) from e

        except httpx.RequestError as e:
            raise TransientRemoteError(str(e), service_id=endpoint) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
