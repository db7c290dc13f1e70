import uuid
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, Field, model_validator

from .common import CamelModel
from ..services.state import PaymentStatus


class PaymentCreate(CamelModel):
    project_id: Optional[uuid.UUID] = None
    material_request_id: Optional[uuid.UUID] = None
    progress_update_id: Optional[uuid.UUID] = None
    bid_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID
    amount: Decimal = Field(gt=0, decimal_places=2)
    payment_method: str = Field(default="bank_transfer", max_length=30)
    payment_notes: Optional[str] = None

    @model_validator(mode="after")
    def _single_offer(self):
        if (self.project_id is None) == (self.material_request_id is None):
            raise ValueError("Either Project ID or Material Request ID is required, but not both")
        if self.progress_update_id is not None and self.project_id is None:
            raise ValueError("Progress update payments require a Project ID")
        return self


class PaymentStatusUpdate(CamelModel):
    payment_status: PaymentStatus = Field(
        validation_alias=AliasChoices("paymentStatus", "payment_status", "status"),
    )
    transaction_reference: Optional[str] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("transactionReference", "transaction_reference"),
    )
