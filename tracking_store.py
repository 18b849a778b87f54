"""Local courier tracking annotations, keyed by order id.

The commerce platform cannot hold courier metadata, so the tracking code,
provider and last known courier status of every consignment live here.
"""
import logging
from typing import Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from local_api import LocalApiClient
from models import TrackingAnnotation

logger = logging.getLogger(__name__)


class TrackingStore(LocalApiClient):
    resource = 'local_tracking'

    async def list_tracking(self) -> List[TrackingAnnotation]:
        annotations: List[TrackingAnnotation] = []
        for row in await self._get_list():
            try:
                annotations.append(TrackingAnnotation.model_validate(row))
            except ValidationError as exc:
                logger.warning("Skipping malformed tracking row %r: %s", row, exc)
        return annotations

    async def save_tracking(
        self,
        order_id: str,
        code: str,
        provider: Optional[str],
        status: Optional[str] = None,
    ) -> None:
        """Upsert one annotation. Failures are logged, never raised."""
        payload = {
            'id': str(order_id),
            'courier_tracking_code': code,
            'courier_provider': provider,
        }
        if status is not None:
            payload['courier_status'] = status
        try:
            resp = await self._post(payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Local tracking update failed for order %s: %s", order_id, exc)


def index_by_order(annotations: Iterable[TrackingAnnotation]) -> Dict[str, TrackingAnnotation]:
    """Map order id to annotation; a later row for the same order wins."""
    return {a.order_id: a for a in annotations}
