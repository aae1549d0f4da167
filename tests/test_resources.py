from datetime import date
from decimal import Decimal

import pytest

from errors import ParseFailed, RequestFailed, ValidationFailed
from fakes import make_client
from resources import FinanceAPI, add_one_year
from schemas import GoalRecord, SavingsIn, TransactionIn


def _api(handler):
    client, store, transport = make_client(handler)
    return FinanceAPI(client), transport


def test_list_drops_malformed_elements() -> None:
    api, _ = _api(
        lambda call: (
            200,
            [
                {"id": 1, "cantidad": "12.50", "fecha": "2026-09-01", "descripcion": "Café"},
                {"id": 2, "fecha": "2026-09-02", "descripcion": "no amount"},
                {"id": 3, "monto": 30, "fecha": "not a date", "concepto": "bad date"},
                {"id": 4, "monto": 5, "fecha": "2026-09-03", "concepto": "Metro"},
            ],
        )
    )

    expenses = api.expenses.list()

    assert [e.id for e in expenses] == [1, 4]
    assert expenses[0].amount == Decimal("12.50")
    assert expenses[1].description == "Metro"


def test_list_rejects_non_array_response() -> None:
    api, _ = _api(lambda call: (200, {"results": []}))

    with pytest.raises(ParseFailed):
        api.incomes.list()


def test_create_sends_wire_names_without_id() -> None:
    def handler(call):
        assert call.method == "POST"
        assert call.path == "/api/finanzas/ingresos/"
        assert call.body == {
            "cantidad": 1500.0,
            "fecha": "2026-10-01",
            "descripcion": "Nómina",
        }
        return 201, {"id": 9, **call.body}

    api, _ = _api(handler)

    created = api.incomes.create(
        TransactionIn(amount=Decimal("1500"), date=date(2026, 10, 1), description="Nómina")
    )

    assert created.id == 9
    assert created.amount == Decimal("1500")


def test_create_rejects_missing_required_fields_before_network() -> None:
    api, transport = _api(lambda call: (201, {}))

    with pytest.raises(ValidationFailed):
        api.expenses.create({"cantidad": 10, "fecha": "2026-10-01", "descripcion": ""})

    assert transport.calls == []


def test_update_and_delete_require_a_saved_id() -> None:
    api, transport = _api(lambda call: (200, {}))

    with pytest.raises(ValueError):
        api.expenses.update(None, {"cantidad": 1, "fecha": "2026-10-01", "descripcion": "x"})
    with pytest.raises(ValueError):
        api.expenses.delete(None)

    assert transport.calls == []


def test_second_delete_surfaces_request_failed() -> None:
    deleted: set[str] = set()

    def handler(call):
        if call.path in deleted:
            return 404, {"detail": "No encontrado."}
        deleted.add(call.path)
        return 204, None

    api, transport = _api(handler)

    assert api.goals.delete(5) is None
    with pytest.raises(RequestFailed) as excinfo:
        api.goals.delete(5)

    assert excinfo.value.status == 404
    assert excinfo.value.message == "No encontrado."
    assert transport.paths() == [
        ("DELETE", "/api/finanzas/objetivo/5/"),
        ("DELETE", "/api/finanzas/objetivo/5/"),
    ]


def test_savings_create_defaults_end_date_to_one_year() -> None:
    def handler(call):
        assert call.body["fecha_inicio"] == "2026-03-15"
        assert call.body["fecha_fin"] == "2027-03-15"
        return 201, {"id": 1, **call.body}

    api, _ = _api(handler)

    saving = api.savings.create(
        SavingsIn(name="Fondo", amount=Decimal("100"), start_date=date(2026, 3, 15))
    )

    assert saving.end_date == date(2027, 3, 15)


def test_add_one_year_handles_leap_day() -> None:
    assert add_one_year(date(2028, 2, 29)) == date(2029, 2, 28)


def test_savings_deposit_increases_amount() -> None:
    def handler(call):
        assert call.method == "PUT"
        assert call.path == "/api/finanzas/ahorros/2/"
        return 200, call.body

    api, _ = _api(handler)
    saving = api.savings.record_model.model_validate(
        {"id": 2, "nombre": "Viaje", "monto": 200, "fecha_inicio": "2026-01-01"}
    )

    updated = api.savings.deposit(saving, Decimal("50"))

    assert updated.amount == Decimal("250")
    with pytest.raises(ValidationFailed):
        api.savings.deposit(saving, Decimal("0"))


def test_goal_contribution_over_target_is_rejected_locally() -> None:
    api, transport = _api(lambda call: (200, call.body))
    goal = GoalRecord(id=1, name="Vacaciones", target_amount=Decimal("1000"), current_amount=Decimal("900"))

    with pytest.raises(ValidationFailed):
        api.goals.contribute(goal, Decimal("150"))

    assert transport.calls == []


def test_goal_contribution_reaching_target_reports_completion() -> None:
    def handler(call):
        assert call.body["actual"] == 1000.0
        assert call.body["descripcion"] == "Vacaciones"
        return 200, call.body

    api, _ = _api(handler)
    goal = GoalRecord(id=1, name="Vacaciones", target_amount=Decimal("1000"), current_amount=Decimal("900"))

    transition = api.goals.contribute(goal, Decimal("100"))

    assert transition.completed_now is True
    assert transition.goal.completed is True
    assert transition.goal.completion_percentage == 100


def test_goal_create_rejects_current_above_target() -> None:
    api, transport = _api(lambda call: (201, call.body))

    with pytest.raises(ValidationFailed):
        api.goals.create({"nombre": "Auto", "meta": 100, "actual": 150})

    assert transport.calls == []


def test_malformed_single_record_response_is_parse_failure() -> None:
    api, _ = _api(lambda call: (200, {"id": 3}))

    with pytest.raises(ParseFailed):
        api.goals.get(3)


def test_dashboard_totals() -> None:
    responses = {
        "/api/finanzas/ingresos/": [{"cantidad": 1000, "fecha": "2026-10-01", "descripcion": "Nómina"}],
        "/api/finanzas/gastos/": [{"cantidad": 250, "fecha": "2026-10-02", "descripcion": "Alquiler"}],
        "/api/finanzas/ahorros/": [{"nombre": "Fondo", "monto": 300, "fecha_inicio": "2026-01-01"}],
        "/api/finanzas/objetivo/": [],
    }
    api, _ = _api(lambda call: (200, responses[call.path]))

    totals = api.dashboard()["totals"]

    assert totals == {
        "income": Decimal("1000"),
        "expense": Decimal("250"),
        "savings": Decimal("300"),
        "balance": Decimal("750"),
    }
