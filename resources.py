from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Generic, Mapping, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from aggregation import summary
from client import ApiClient
from errors import ParseFailed, ValidationFailed
from schemas import (
    Category,
    Frequency,
    GoalIn,
    GoalRecord,
    RecurringExpenseIn,
    RecurringExpenseRecord,
    RemoteModel,
    SavingsIn,
    SavingsRecord,
    TransactionIn,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/finanzas"

RecordT = TypeVar("RecordT", bound=RemoteModel)
Payload = Union[BaseModel, Mapping[str, Any]]


def _validate_input(model: Type[RemoteModel], payload: Payload) -> RemoteModel:
    if isinstance(payload, model):
        return payload
    data = payload.model_dump(by_alias=True) if isinstance(payload, BaseModel) else payload
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ValidationFailed(str(exc)) from exc


def _require_id(record_id: Optional[int], action: str) -> int:
    if record_id is None:
        raise ValueError(f"Cannot {action} a record that has not been saved yet")
    return record_id


def add_one_year(start: date) -> date:
    try:
        return start.replace(year=start.year + 1)
    except ValueError:
        # 29 February
        return start.replace(year=start.year + 1, day=28)


class ReadOnlyResource(Generic[RecordT]):
    def __init__(self, api: ApiClient, resource: str, record_model: Type[RecordT]) -> None:
        self.api = api
        self.resource = resource
        self.record_model = record_model

    @property
    def path(self) -> str:
        return f"{API_PREFIX}/{self.resource}/"

    def _detail_path(self, record_id: int) -> str:
        return f"{API_PREFIX}/{self.resource}/{record_id}/"

    def _record(self, data: Any) -> RecordT:
        try:
            return self.record_model.model_validate(data)
        except ValidationError as exc:
            logger.warning(f"resource_parse_failed: resource={self.resource}")
            raise ParseFailed() from exc

    def list(self) -> list[RecordT]:
        data = self.api.request(self.path)
        if not isinstance(data, list):
            raise ParseFailed(f"Expected a list of {self.resource}")
        records: list[RecordT] = []
        skipped = 0
        for item in data:
            try:
                records.append(self.record_model.model_validate(item))
            except ValidationError:
                skipped += 1
        if skipped:
            logger.warning(
                f"resource_list: resource={self.resource} skipped_malformed={skipped}"
            )
        return records

    def get(self, record_id: int) -> RecordT:
        return self._record(self.api.request(self._detail_path(record_id)))


class Resource(ReadOnlyResource[RecordT]):
    """CRUD for one remote resource; API errors propagate unchanged."""

    def __init__(
        self,
        api: ApiClient,
        resource: str,
        record_model: Type[RecordT],
        input_model: Type[RemoteModel],
    ) -> None:
        super().__init__(api, resource, record_model)
        self.input_model = input_model

    def _prepare(self, payload: Payload) -> dict[str, Any]:
        return _validate_input(self.input_model, payload).to_payload()

    def create(self, payload: Payload) -> RecordT:
        body = self._prepare(payload)
        body.pop("id", None)
        return self._record(self.api.request(self.path, method="POST", body=body))

    def update(self, record_id: Optional[int], payload: Payload) -> RecordT:
        record_id = _require_id(record_id, "update")
        body = self._prepare(payload)
        body["id"] = record_id
        return self._record(
            self.api.request(self._detail_path(record_id), method="PUT", body=body)
        )

    def delete(self, record_id: Optional[int]) -> None:
        record_id = _require_id(record_id, "delete")
        self.api.request(self._detail_path(record_id), method="DELETE")


class SavingsResource(Resource[SavingsRecord]):
    def __init__(self, api: ApiClient) -> None:
        super().__init__(api, "ahorros", SavingsRecord, SavingsIn)

    def create(self, payload: Payload) -> SavingsRecord:
        data = _validate_input(SavingsIn, payload)
        if data.end_date is None:
            data = data.model_copy(update={"end_date": add_one_year(data.start_date)})
        return super().create(data)

    def deposit(self, record: SavingsRecord, amount: Decimal) -> SavingsRecord:
        if amount <= 0:
            raise ValidationFailed("Amount must be greater than zero")
        updated = record.model_copy(update={"amount": record.amount + amount})
        return self.update(record.id, updated.model_dump(by_alias=True))


@dataclass(frozen=True)
class GoalTransition:
    goal: GoalRecord
    completed_now: bool


class GoalResource(Resource[GoalRecord]):
    def __init__(self, api: ApiClient) -> None:
        super().__init__(api, "objetivo", GoalRecord, GoalIn)

    def contribute(self, goal: GoalRecord, amount: Decimal) -> GoalTransition:
        """Add savings to a goal; exceeding the target is rejected locally."""
        if amount <= 0:
            raise ValidationFailed("Amount must be greater than zero")
        new_current = goal.current_amount + amount
        if new_current > goal.target_amount:
            remaining = goal.target_amount - goal.current_amount
            raise ValidationFailed(
                f"Contribution exceeds the goal target; at most {remaining} can be added"
            )
        was_completed = goal.completed
        updated = self.update(
            goal.id,
            goal.model_copy(update={"current_amount": new_current}).model_dump(
                by_alias=True
            ),
        )
        completed_now = updated.completed and not was_completed
        if completed_now:
            logger.info(f"goal_completed: id={updated.id}")
        return GoalTransition(goal=updated, completed_now=completed_now)


class FinanceAPI:
    """Every resource client of the remote API behind one authenticated client."""

    def __init__(self, api: ApiClient) -> None:
        self.api = api
        self.incomes: Resource[TransactionRecord] = Resource(
            api, "ingresos", TransactionRecord, TransactionIn
        )
        self.expenses: Resource[TransactionRecord] = Resource(
            api, "gastos", TransactionRecord, TransactionIn
        )
        self.recurring_expenses: Resource[RecurringExpenseRecord] = Resource(
            api, "gastosfijos", RecurringExpenseRecord, RecurringExpenseIn
        )
        self.savings = SavingsResource(api)
        self.goals = GoalResource(api)
        self.frequencies: ReadOnlyResource[Frequency] = ReadOnlyResource(
            api, "frecuencia", Frequency
        )
        self.categories: ReadOnlyResource[Category] = ReadOnlyResource(
            api, "categoria", Category
        )

    def dashboard(self) -> dict[str, object]:
        incomes = self.incomes.list()
        expenses = self.expenses.list()
        savings = self.savings.list()
        goals = self.goals.list()
        return {
            "incomes": incomes,
            "expenses": expenses,
            "savings": savings,
            "goals": goals,
            "totals": summary(incomes, expenses, savings),
        }
