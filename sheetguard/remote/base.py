"""
Remote document service interface.
"""

from abc import ABC, abstractmethod
from typing import Any

from sheetguard.remote.models import (
    BatchUpdateResult,
    DocumentMetadata,
    Region,
    ValueRange,
)
from sheetguard.services.deadline import Deadline

# Logical endpoint names, one circuit breaker each
VALUES_GET = "values.get"
METADATA_GET = "spreadsheets.get"
BATCH_UPDATE = "spreadsheets.batchUpdate"


class RemoteDocumentService(ABC):
    """
    Abstract contract of the remote document service.

    Implementations should:
    - Raise TransientRemoteError (or a subclass) for retryable failures
    - Raise PermanentRemoteError for client errors
    - Never retry, cache or rate limit themselves; the resilience stack does that
    """

    @property
    @abstractmethod
    def service_id(self) -> str:
        """Unique identifier for this remote service."""
        ...

    @abstractmethod
    async def get_values(
        self,
        document_id: str,
        region: Region,
        *,
        value_render: str = "FORMULA",
        deadline: Deadline | None = None,
    ) -> ValueRange:
        """Read the current values of a region."""
        ...

    @abstractmethod
    async def get_metadata(
        self, document_id: str, *, deadline: Deadline | None = None
    ) -> DocumentMetadata:
        """Read the document's version token and sheet dimensions."""
        ...

    @abstractmethod
    async def batch_update(
        self,
        document_id: str,
        requests: list[dict[str, Any]],
        *,
        deadline: Deadline | None = None,
    ) -> BatchUpdateResult:
        """Apply an ordered list of sub-operations in one call."""
        ...

    async def close(self) -> None:
        """Release any held resources."""
        return None
