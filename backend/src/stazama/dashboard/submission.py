"""Customer request submission.

The form is validated by ``InspectionRequestCreate`` before this module sees
it. The insert is raced against a timeout; on timeout only the caller stops
waiting, the insert itself keeps running.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from stazama.app.config import get_settings
from stazama.dashboard.backend_client import BackendClient, BackendError
from stazama.dashboard.notifications import Notifier
from stazama.domain.schemas import InspectionRequestCreate, InspectionRequestInsert
from stazama.services.request_state_machine import generate_tracking_id

logger = logging.getLogger(__name__)


class SubmissionTimeoutError(Exception):
    """The backend did not answer the insert in time."""


@dataclass
class SubmissionResult:
    success: bool
    tracking_id: Optional[str] = None
    row: Optional[dict[str, Any]] = None
    error: Optional[str] = None


async def insert_with_timeout(
    backend: BackendClient,
    data: InspectionRequestInsert,
    timeout: float,
) -> dict[str, Any]:
    task = asyncio.ensure_future(backend.insert_request(data))
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        logger.warning("Insert of %s still pending after %.1fs", data.tracking_id, timeout)
        raise SubmissionTimeoutError("Insert operation timed out") from None


async def submit_request(
    backend: BackendClient,
    form: InspectionRequestCreate,
    notifier: Optional[Notifier] = None,
    timeout: Optional[float] = None,
) -> SubmissionResult:
    """Insert a new inspection request and return its tracking id.

    Guests submit with ``user_id=None``. The tracking id is issued here, once,
    and the tier fee comes from settings.
    """
    notifier = notifier or Notifier()
    settings = get_settings()
    timeout = settings.submission_timeout_seconds if timeout is None else timeout

    tracking_id = generate_tracking_id()
    data = InspectionRequestInsert(
        **form.model_dump(),
        tracking_id=tracking_id,
        service_fee=settings.service_fees[form.service_tier.value],
        user_id=backend.caller.user_id,
    )

    try:
        row = await insert_with_timeout(backend, data, timeout)
    except SubmissionTimeoutError as e:
        notifier.error(f"Failed to submit request: {e}")
        return SubmissionResult(success=False, tracking_id=tracking_id, error=str(e))
    except BackendError as e:
        logger.error("Error submitting request: %s", e)
        notifier.error(f"Failed to submit request: {e.message or 'Please try again.'}")
        return SubmissionResult(success=False, error=e.message)

    logger.info("Request submitted with tracking id %s", tracking_id)
    return SubmissionResult(success=True, tracking_id=tracking_id, row=row)
