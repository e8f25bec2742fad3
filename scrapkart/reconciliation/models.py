from typing import Literal, Optional
from uuid import UUID
from pydantic import BaseModel, Field


class ClientPaymentConfirmation(BaseModel):
    order_id: UUID
    gateway_transaction_id: str = Field(min_length=1, max_length=128)
    outcome: Literal["SUCCESS", "FAILED"]
    amount: Optional[int] = Field(default=None, gt=0)
