from typing import Literal, Optional
from pydantic import BaseModel, Field


class FulfillmentUpdate(BaseModel):
    status: Literal["IN_PROGRESS", "COMPLETED"]
    final_amount: Optional[int] = Field(default=None, ge=0)
