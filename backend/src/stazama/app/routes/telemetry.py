"""Telemetry ingest for dashboard clients flushing their monitoring buffers."""

import logging
from collections import deque

from fastapi import APIRouter, status

from stazama.domain.schemas import ErrorIn, ErrorsBatch, MetricIn, MetricsBatch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["telemetry"])

# Most recent ingested records, read by the admin logs view
received_metrics: deque[MetricIn] = deque(maxlen=1000)
received_errors: deque[ErrorIn] = deque(maxlen=100)


@router.post("/metrics", status_code=status.HTTP_202_ACCEPTED)
async def ingest_metrics(batch: MetricsBatch):
    received_metrics.extend(batch.metrics)
    logger.debug("Ingested %d metrics", len(batch.metrics))
    return {"accepted": len(batch.metrics)}


@router.post("/errors", status_code=status.HTTP_202_ACCEPTED)
async def ingest_errors(batch: ErrorsBatch):
    received_errors.extend(batch.errors)
    for error in batch.errors:
        logger.warning("Client error (user=%s): %s", error.user_id, error.message)
    return {"accepted": len(batch.errors)}
