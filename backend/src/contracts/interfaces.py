from __future__ import annotations

import uuid
from typing import Any, Protocol

from backend.src.contracts.models import (
    ExtractionFailure,
    ProductTarget,
    RawSnapshot,
)


class IExtractor(Protocol):
    async def extract(self, product: ProductTarget) -> RawSnapshot | ExtractionFailure: ...


class INotificationSink(Protocol):
    async def send(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        payload: dict[str, Any],
    ) -> bool: ...
