import uuid
from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field

from .common import CamelModel


class ProgressUpdateCreate(CamelModel):
    project_id: uuid.UUID
    bid_id: uuid.UUID
    submitted_by: uuid.UUID
    description: str = Field(min_length=1)
    milestone_name: Optional[str] = Field(default=None, max_length=255)
    progress_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100, decimal_places=2)
    payment_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)


class DesignSubmissionCreate(CamelModel):
    project_id: uuid.UUID
    bid_id: uuid.UUID
    architect_id: uuid.UUID
    # Informational only; the project owner is always used as the client
    client_id: Optional[uuid.UUID] = None
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    payment_amount: Decimal = Field(gt=0, decimal_places=2)


class ReviewDecision(CamelModel):
    reviewed_by: uuid.UUID
    status: Literal["approved", "rejected"]
    review_comments: Optional[str] = None
