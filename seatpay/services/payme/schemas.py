"""JSON-RPC envelope and params for the Payme merchant API."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

PaymeMethod = Literal[
    "CheckPerformTransaction",
    "CreateTransaction",
    "PerformTransaction",
    "CancelTransaction",
    "CheckTransaction",
    "GetStatement",
]


class PaymeRequest(BaseModel):
    """One JSON-RPC call as posted by Payme."""

    method: PaymeMethod
    params: dict = Field(default_factory=dict)
    id: int | str


class Account(BaseModel):
    model_config = ConfigDict(extra="allow")

    order_id: str = ""


class CheckPerformParams(BaseModel):
    amount: int
    account: Account = Field(default_factory=Account)


class CreateTransactionParams(BaseModel):
    id: str = Field(min_length=1)
    time: int | None = None
    amount: int
    account: Account = Field(default_factory=Account)


class TransactionIdParams(BaseModel):
    """Params of PerformTransaction and CheckTransaction."""

    id: str = Field(min_length=1)


class CancelTransactionParams(BaseModel):
    id: str = Field(min_length=1)
    reason: int | None = None


class StatementParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: int = Field(alias="from")
    to: int
