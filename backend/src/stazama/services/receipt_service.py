"""Payment receipts: download, email and reissue.

The JSON receipt document is built here. PDF rendering is an injected
collaborator (``PdfRenderer``); without one only the JSON format is offered.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from stazama.dashboard.backend_client import BackendClient, BackendError
from stazama.domain.enums import ReceiptFormat
from stazama.domain.schemas import InspectionRequestRecord
from stazama.services.email_service import send_receipt_email
from stazama.services.request_state_machine import generate_verification_code

logger = logging.getLogger(__name__)

PdfRenderer = Callable[[InspectionRequestRecord, dict[str, Any]], bytes]
Mailer = Callable[[str, dict[str, Any], Optional[bytes]], Awaitable[bool]]


@dataclass
class ReceiptResult:
    success: bool
    verification_code: Optional[str] = None
    content: Optional[bytes] = None
    filename: Optional[str] = None
    media_type: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None


def build_receipt_data(
    request: InspectionRequestRecord,
    verification_code: str,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """JSON receipt document stored on the row and sent to the customer."""
    now = now or datetime.now(timezone.utc)
    return {
        "receipt_number": request.receipt_number,
        "transaction_id": request.tracking_id or request.id,
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
        "amount": request.service_fee or 0,
        "payment_method": request.payment_method or "N/A",
        "payment_status": "PAID" if request.payment_received else "PENDING",
        "verification_code": verification_code,
        "customer_name": request.customer_name,
        "service_details": f"{request.service_tier.value} - {request.product_details}",
    }


class ReceiptService:
    def __init__(
        self,
        backend: BackendClient,
        pdf_renderer: Optional[PdfRenderer] = None,
        mailer: Mailer = send_receipt_email,
    ):
        self.backend = backend
        self.pdf_renderer = pdf_renderer
        self.mailer = mailer

    def _generate(self, request: InspectionRequestRecord) -> tuple[str, dict[str, Any]]:
        # An issued code is reused so the printed receipt keeps verifying.
        code = request.receipt_verification_code or generate_verification_code()
        return code, build_receipt_data(request, code)

    async def download_receipt(
        self,
        request: InspectionRequestRecord,
        format: Union[ReceiptFormat, str] = ReceiptFormat.PDF,
    ) -> ReceiptResult:
        """Render the receipt and save its snapshot on the request row."""
        if not request.receipt_number:
            return ReceiptResult(success=False, error="No receipt available")
        receipt_format = ReceiptFormat(format)
        if receipt_format == ReceiptFormat.PDF and self.pdf_renderer is None:
            return ReceiptResult(success=False, error="PDF receipts are not available")

        code, receipt = self._generate(request)
        if receipt_format == ReceiptFormat.PDF:
            content = self.pdf_renderer(request, receipt)
            media_type = "application/pdf"
        else:
            content = json.dumps(receipt, indent=2).encode()
            media_type = "application/json"

        try:
            await self.backend.update_request(
                request.id,
                {
                    "receipt_verification_code": code,
                    "receipt_issued_at": datetime.now(timezone.utc),
                    "receipt_data": receipt,
                },
            )
        except BackendError as e:
            logger.error("Error saving receipt for %s: %s", request.id, e)
            return ReceiptResult(success=False, error=e.message)

        return ReceiptResult(
            success=True,
            verification_code=code,
            content=content,
            filename=f"stazama-receipt-{request.receipt_number}.{receipt_format.value}",
            media_type=media_type,
        )

    async def email_receipt(self, request: InspectionRequestRecord, address: str) -> ReceiptResult:
        if not request.receipt_number:
            return ReceiptResult(success=False, error="No receipt available")
        if not address:
            return ReceiptResult(success=False, error="An email address is required")

        code, receipt = self._generate(request)
        pdf_bytes = self.pdf_renderer(request, receipt) if self.pdf_renderer else None
        sent = await self.mailer(address, receipt, pdf_bytes)
        if not sent:
            return ReceiptResult(success=False, verification_code=code, error="Failed to email receipt")
        return ReceiptResult(
            success=True, verification_code=code, message=f"Receipt emailed to {address}"
        )

    async def request_receipt_reissue(self, request_id: str) -> ReceiptResult:
        """Issue a fresh verification code, invalidating the previous one."""
        code = generate_verification_code()
        try:
            await self.backend.update_request(
                request_id,
                {
                    "receipt_verification_code": code,
                    "receipt_issued_at": datetime.now(timezone.utc),
                },
            )
        except BackendError as e:
            logger.error("Error reissuing receipt for %s: %s", request_id, e)
            return ReceiptResult(success=False, error=e.message)
        logger.info("Receipt for %s reissued", request_id)
        return ReceiptResult(success=True, verification_code=code)
