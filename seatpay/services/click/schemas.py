"""Click SHOP-API webhook fields.

Fields used in the signature stay strings exactly as received so the md5 is
computed over the same text Click signed.
"""

from pydantic import BaseModel, ConfigDict, Field

DIGITS = r"^\d+$"


class ClickRequest(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True, extra="ignore")

    click_trans_id: str = Field(pattern=DIGITS)
    service_id: str = Field(pattern=DIGITS)
    click_paydoc_id: str | None = None
    merchant_trans_id: str = Field(min_length=1)
    merchant_prepare_id: str | None = Field(default=None, pattern=DIGITS)
    amount: str = Field(pattern=r"^\d+(\.\d+)?$")
    action: int
    error: int = 0
    error_note: str | None = None
    sign_time: str = Field(min_length=1)
    sign_string: str = Field(min_length=1)


class ClickPrepareResponse(BaseModel):
    click_trans_id: int
    merchant_trans_id: str
    merchant_prepare_id: int
    error: int
    error_note: str


class ClickCompleteResponse(BaseModel):
    click_trans_id: int
    merchant_trans_id: str
    merchant_confirm_id: int
    error: int
    error_note: str
