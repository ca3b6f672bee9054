from datetime import datetime
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

class Credentials(BaseModel):
    login: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

class WithdrawRequest(BaseModel):
    order: str
    sum: Decimal = Field(..., gt=0, decimal_places=2)

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    number: str
    status: str
    accrual: float = 0
    uploaded_at: datetime

class BalanceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    current: float
    withdrawn: float

class WithdrawalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order: str = Field(validation_alias=AliasChoices("order_number", "order"))
    sum: float
    processed_at: datetime