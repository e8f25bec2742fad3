from typing import Optional
from pydantic import BaseModel, Field


class RefundRequestBody(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0, description="paise; defaults to the settled amount")
