import datetime as dt
from decimal import Decimal
from typing import Annotated, Any, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    model_validator,
)

from aggregation import goal_completed, goal_percentage

# The remote API returns plain JSON numbers; keep Decimal locally.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def wire(name: str, *alternates: str, default: Any = ..., **constraints: Any) -> Any:
    """Field read from any of the API's known keys, written back as ``name``."""
    return Field(
        default,
        validation_alias=AliasChoices(name, *alternates),
        serialization_alias=name,
        **constraints,
    )


class RemoteModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class UserProfile(RemoteModel):
    username: str
    id: Optional[int] = None
    email: Optional[str] = None


class LoginResponse(RemoteModel):
    access: Optional[str] = None
    refresh: Optional[str] = None
    user: Optional[UserProfile] = None


class RefreshResponse(RemoteModel):
    access: Optional[str] = None


class Credentials(BaseModel):
    username: str = Field(..., min_length=1, max_length=150)
    password: str = Field(..., min_length=1)


class ProfileUpdateIn(RemoteModel):
    username: Optional[str] = Field(default=None, min_length=1, max_length=150)
    email: Optional[str] = Field(default=None, max_length=254)


class PasswordChangeIn(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=1)
    confirm_password: Optional[str] = None

    @model_validator(mode="after")
    def _passwords_match(self) -> "PasswordChangeIn":
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("New password and confirmation do not match")
        return self


class AmountIn(BaseModel):
    amount: Decimal = Field(..., gt=0)


class TransactionRecord(RemoteModel):
    """Income or expense as stored by the remote API."""

    id: Optional[int] = None
    amount: Money = wire("cantidad", "monto", "amount")
    date: dt.date = wire("fecha", "date")
    description: str = wire("descripcion", "concepto", "description", default="")
    category: Optional[str] = wire("categoria", "category", default=None)


class TransactionIn(TransactionRecord):
    amount: Money = wire("cantidad", "monto", "amount", gt=0)
    description: str = wire(
        "descripcion", "concepto", "description", min_length=1, max_length=200
    )


class RecurringExpenseRecord(RemoteModel):
    id: Optional[int] = None
    amount: Money = wire("cantidad", "monto", "amount")
    description: str = wire("descripcion", "concepto", "description", default="")
    frequency: Optional[int] = wire("frecuencia", "frequency", default=None)
    category: Optional[str] = wire("categoria", "category", default=None)
    date: Optional[dt.date] = wire("fecha", "date", default=None)


class RecurringExpenseIn(RecurringExpenseRecord):
    amount: Money = wire("cantidad", "monto", "amount", gt=0)
    description: str = wire(
        "descripcion", "concepto", "description", min_length=1, max_length=200
    )
    frequency: int = wire("frecuencia", "frequency")


class SavingsRecord(RemoteModel):
    id: Optional[int] = None
    name: str = wire("nombre", "name")
    amount: Money = wire("monto", "cantidad", "amount")
    start_date: dt.date = wire("fecha_inicio", "fechaInicio", "fecha", "start_date")
    end_date: Optional[dt.date] = wire("fecha_fin", "fechaFin", "end_date", default=None)
    description: Optional[str] = wire("descripcion", "description", default=None)
    kind: Optional[str] = wire("tipo", "kind", default=None)


class SavingsIn(SavingsRecord):
    name: str = wire("nombre", "name", min_length=1, max_length=120)
    amount: Money = wire("monto", "cantidad", "amount", ge=0)

    @model_validator(mode="after")
    def _dates_in_order(self) -> "SavingsIn":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date must not be before start date")
        return self


class GoalRecord(RemoteModel):
    id: Optional[int] = None
    name: str = wire("nombre", "descripcion", "name")
    target_amount: Money = wire("meta", "objetivo", "target_amount")
    current_amount: Money = wire("actual", "current_amount", default=Decimal("0"))
    frequency: Optional[int] = wire("frecuencia", "frequency", default=None)
    start_date: Optional[dt.date] = wire(
        "fecha_inicio", "fechaInicio", "start_date", default=None
    )
    end_date: Optional[dt.date] = wire("fecha_fin", "fechaFin", "end_date", default=None)

    @property
    def completion_percentage(self) -> Optional[int]:
        return goal_percentage(self.current_amount, self.target_amount)

    @property
    def completed(self) -> bool:
        return goal_completed(self.current_amount, self.target_amount)

    def to_payload(self) -> dict[str, Any]:
        # name and description are one display string for goals
        payload = super().to_payload()
        payload["descripcion"] = self.name
        payload["completado"] = self.completed
        return payload


class GoalIn(GoalRecord):
    name: str = wire("nombre", "descripcion", "name", min_length=1, max_length=120)
    target_amount: Money = wire("meta", "objetivo", "target_amount", gt=0)
    current_amount: Money = wire("actual", "current_amount", default=Decimal("0"), ge=0)

    @model_validator(mode="after")
    def _current_within_target(self) -> "GoalIn":
        if self.current_amount > self.target_amount:
            raise ValueError("Current amount cannot exceed the target amount")
        return self


class Frequency(RemoteModel):
    id: int
    label: str = wire("nombre", "label")


class Category(RemoteModel):
    id: int
    name: str = wire("nombre", "name")
    kind: Optional[str] = wire("tipo", "kind", default=None)
