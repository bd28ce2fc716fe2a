"""
Request models for the ledger operations

Pydantic models validating raw input (strings, numbers) before it reaches
the service layer. ``parse_request`` turns pydantic errors into the ledger's
own ValidationError so callers handle one error taxonomy.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .currency import Currency, Money
from .errors import ValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)


def _positive_decimal(value: Any) -> str:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError("must be a decimal number")
    if not amount.is_finite() or amount <= 0:
        raise ValueError("must be a positive amount")
    return str(amount)


def _currency_code(value: str) -> str:
    code = str(value).strip().upper()
    if code not in Currency.__members__:
        raise ValueError(f"unsupported currency {value}")
    return code


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (USD, EUR, etc.)")

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, v):
        return _positive_decimal(v)

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v):
        return _currency_code(v)

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


class DepositRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    amount: MoneyModel
    idempotency_key: Optional[str] = None
    description: str = ""


class TopUpRequest(BaseModel):
    caller_id: str = Field(..., min_length=1)
    account_id: str = Field(..., min_length=1)
    amount: MoneyModel
    payment_method: str = "bank_transfer"
    idempotency_key: Optional[str] = None

    @field_validator("payment_method")
    @classmethod
    def check_method(cls, v):
        if v not in ("credit_card", "bank_transfer"):
            raise ValueError("payment_method must be credit_card or bank_transfer")
        return v


class TransferRequest(BaseModel):
    caller_id: str = Field(..., min_length=1)
    from_account_id: str = Field(..., min_length=1)
    to_account: str = Field(..., min_length=1, description="Account id or account number")
    amount: MoneyModel
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    description: str = ""


class ExchangeRequest(BaseModel):
    caller_id: str = Field(..., min_length=1)
    from_account_id: str = Field(..., min_length=1)
    to_account_id: Optional[str] = None
    amount: MoneyModel
    to_currency: str
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("to_currency")
    @classmethod
    def check_to_currency(cls, v):
        return _currency_code(v)


def parse_request(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate ``data`` against ``model``, raising the ledger ValidationError"""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}", {"errors": errors})
