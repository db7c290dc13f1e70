import uuid
from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field, model_validator

from .common import CamelModel
from ..services.state import BidderRole


class BidCreate(CamelModel):
    project_id: Optional[uuid.UUID] = None
    material_request_id: Optional[uuid.UUID] = None
    bidder_user_id: uuid.UUID
    bidder_role: BidderRole
    bid_amount: Decimal = Field(gt=0, decimal_places=2)
    proposed_timeline: str = Field(min_length=3, max_length=100)
    description: str = Field(min_length=10)

    @model_validator(mode="after")
    def _single_offer(self):
        if (self.project_id is None) == (self.material_request_id is None):
            raise ValueError("Bid must be for either a project or a material request, but not both")
        return self


class BidStatusUpdate(CamelModel):
    status: Literal["accepted", "rejected"]
    # Offer owner performing the decision; checked when supplied
    acted_by: Optional[uuid.UUID] = None
