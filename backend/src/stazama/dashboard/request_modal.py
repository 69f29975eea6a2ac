"""Detail/action modal shared by every role.

The modal holds form state only. Each mutation is delegated to
``RoleActions`` and, once it reports success, the request is re-read by id
so server-computed fields (receipt number, verification code) show up.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from stazama.dashboard.data_sync import DashboardData
from stazama.dashboard.notifications import DESTRUCTIVE, Notifier
from stazama.dashboard.role_actions import RoleActions
from stazama.domain.enums import ModalTab, ReceiptFormat, RequestStatus
from stazama.domain.schemas import InspectionRequestRecord
from stazama.services.permissions import action_tabs
from stazama.services.receipt_service import ReceiptResult, ReceiptService

logger = logging.getLogger(__name__)


@dataclass
class ModalForm:
    status: str = ""
    agent_id: str = ""
    fee_amount: str = ""
    additional_fees: str = "0"
    fee_notes: str = ""
    paid_amount: str = ""
    payment_method: str = "cash"

    @classmethod
    def for_request(cls, request: InspectionRequestRecord) -> "ModalForm":
        return cls(
            status=request.status.value,
            agent_id=request.assigned_agent_id or "",
            fee_amount="" if request.service_fee is None else str(request.service_fee),
            fee_notes=request.fee_notes or "",
        )

    @property
    def total_amount(self) -> float:
        def _num(value: str) -> float:
            try:
                return float(value)
            except (TypeError, ValueError):
                return 0.0

        return _num(self.fee_amount) + _num(self.additional_fees)


class RequestModalController:
    def __init__(
        self,
        data: DashboardData,
        actions: Optional[RoleActions] = None,
        receipts: Optional[ReceiptService] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.data = data
        self.notifier = notifier or data.notifier
        self.actions = actions or RoleActions(data, self.notifier)
        self.receipts = receipts or ReceiptService(data.backend)
        self.tabs = action_tabs(data.permissions)
        self.request: Optional[InspectionRequestRecord] = None
        self.form = ModalForm()
        self.active_tab = ModalTab.DETAILS

    @property
    def is_open(self) -> bool:
        return self.request is not None

    def open(self, request: InspectionRequestRecord) -> None:
        self.request = request
        self.form = ModalForm.for_request(request)
        self.active_tab = ModalTab.DETAILS

    def close(self) -> None:
        self.request = None
        self.form = ModalForm()

    def set_tab(self, tab: Union[ModalTab, str]) -> bool:
        tab = ModalTab(tab)
        if tab not in self.tabs:
            return False
        self.active_tab = tab
        return True

    @property
    def is_assigned_to_me(self) -> bool:
        return (
            self.request is not None
            and self.data.caller.user_id is not None
            and self.request.assigned_agent_id == self.data.caller.user_id
        )

    @property
    def can_self_assign(self) -> bool:
        return (
            self.request is not None
            and self.data.permissions.can_assign_self
            and not self.request.assigned_agent_id
        )

    @property
    def can_download_receipt(self) -> bool:
        return (
            self.request is not None
            and self.request.status == RequestStatus.COMPLETED
            and bool(self.request.receipt_number)
        )

    async def _after(self, ok: bool) -> bool:
        if ok and self.request is not None:
            refreshed = await self.data.refresh_request(self.request.id)
            if refreshed is not None and self.request is not None:
                self.request = refreshed
                self.form = ModalForm.for_request(refreshed)
        return ok

    # -- actions ---------------------------------------------------------------

    async def submit_status(self) -> bool:
        if self.request is None or not self.form.status:
            return False
        return await self._after(await self.actions.update_status(self.request.id, self.form.status))

    async def submit_agent_assignment(self) -> bool:
        if self.request is None:
            return False
        agent_id = self.form.agent_id or None
        return await self._after(await self.actions.assign_agent(self.request.id, agent_id))

    async def assign_self(self) -> bool:
        if self.request is None:
            return False
        return await self._after(await self.actions.assign_self(self.request.id))

    async def submit_payment(self) -> bool:
        if self.request is None or not self.form.paid_amount:
            return False
        return await self._after(
            await self.actions.process_payment(
                self.request.id, self.form.paid_amount, self.form.payment_method
            )
        )

    async def submit_fees(self) -> bool:
        if self.request is None or not self.form.fee_amount:
            return False
        return await self._after(
            await self.actions.update_fees(
                self.request.id,
                self.form.fee_amount,
                self.form.additional_fees,
                self.form.fee_notes,
            )
        )

    async def mark_payment_received(self) -> bool:
        if self.request is None:
            return False
        return await self._after(await self.actions.mark_payment_received(self.request.id))

    async def complete(self) -> bool:
        if self.request is None:
            return False
        return await self._after(await self.actions.complete_request(self.request.id))

    async def cancel(self) -> bool:
        if self.request is None:
            return False
        return await self._after(await self.actions.cancel_request(self.request.id))

    async def revert(self) -> bool:
        if self.request is None:
            return False
        return await self._after(await self.actions.revert_request(self.request.id))

    # -- receipts --------------------------------------------------------------

    async def download_receipt(
        self, format: Union[ReceiptFormat, str] = ReceiptFormat.PDF
    ) -> Optional[ReceiptResult]:
        if self.request is None:
            return None
        if not self.request.receipt_number:
            self.notifier.error("No receipt available")
            return None
        result = await self.receipts.download_receipt(self.request, format)
        if not result.success:
            self.notifier.error(result.error or "Failed to download receipt")
            return result
        self.notifier.toast("Success", f"Receipt downloaded. Code: {result.verification_code}")
        await self._after(True)
        return result

    async def email_receipt(self, address: str) -> Optional[ReceiptResult]:
        if self.request is None or not self.request.receipt_number:
            return None
        result = await self.receipts.email_receipt(self.request, address)
        if result.success:
            self.notifier.toast("Info", result.message or "")
        else:
            self.notifier.toast("Error", result.error or "Failed to email receipt", DESTRUCTIVE)
        return result

    async def reissue_receipt(self) -> Optional[ReceiptResult]:
        if self.request is None:
            return None
        result = await self.receipts.request_receipt_reissue(self.request.id)
        if not result.success:
            self.notifier.error("Failed to reissue receipt")
            return result
        self.notifier.toast("Success", f"Receipt reissued. Code: {result.verification_code}")
        await self._after(True)
        return result
