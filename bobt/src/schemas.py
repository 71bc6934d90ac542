"""
Pydantic request bodies for the ramp HTTP API.

Field names follow the dashboard's camelCase JSON. Amounts are parsed as
Decimal so no binary floating point enters the fee arithmetic.
"""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from stellar_sdk import StrKey


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


def _check_address(v: str) -> str:
    v = v.strip()
    if not StrKey.is_valid_ed25519_public_key(v):
        raise ValueError("Invalid Stellar address")
    return v


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


class OnRampQuoteRequest(_Body):
    bob_amount: Decimal = Field(..., alias="bobAmount", gt=0, examples=[1000])


class OffRampQuoteRequest(_Body):
    bobt_amount: Decimal = Field(..., alias="bobtAmount", gt=0, examples=[1000])


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class OnRampCreateRequest(_Body):
    """Open an on-ramp: the user pays BOB by bank transfer and receives BOBT."""
    user_address: str = Field(..., alias="userAddress")
    bob_amount: Decimal = Field(..., alias="bobAmount", gt=0)

    @field_validator("user_address")
    @classmethod
    def validate_user_address(cls, v: str) -> str:
        return _check_address(v)


class OffRampCreateRequest(_Body):
    """Open an off-ramp: the user redeems BOBT and is paid BOB."""
    user_address: str = Field(..., alias="userAddress")
    bobt_amount: Decimal = Field(..., alias="bobtAmount", gt=0)
    bank_account: str = Field(..., alias="bankAccount", min_length=1, max_length=64)
    bank_name: str = Field(..., alias="bankName", min_length=1, max_length=100)

    @field_validator("user_address")
    @classmethod
    def validate_user_address(cls, v: str) -> str:
        return _check_address(v)


class CancelRequest(_Body):
    user_address: str = Field(..., alias="userAddress", min_length=1)


# ---------------------------------------------------------------------------
# Operator
# ---------------------------------------------------------------------------


class VerifyPaymentRequest(_Body):
    request_id: str = Field(..., alias="requestId", min_length=1)
    bank_reference: str = Field(..., alias="bankReference")
    verified_by: str = Field(..., alias="verifiedBy", min_length=1)


class RequestIdBody(_Body):
    request_id: str = Field(..., alias="requestId", min_length=1)


class CompleteRequest(_Body):
    request_id: str = Field(..., alias="requestId", min_length=1)
    tx_hash: str = Field(..., alias="txHash", min_length=1)


class FailRequest(_Body):
    request_id: str = Field(..., alias="requestId", min_length=1)
    reason: str = Field(..., min_length=1, max_length=500)
