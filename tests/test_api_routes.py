import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from client import ApiClient
from fakes import BASE_URL, FakeTransport
from main import InFlightGuard, app, get_finance_api
from resources import FinanceAPI
from session_store import MemorySessionStore


@pytest.fixture
def backend():
    """Routes fake upstream calls to ``responses[(method, path)]``."""
    responses: dict[tuple[str, str], tuple[int, object]] = {}
    transport = FakeTransport(lambda call: responses[(call.method, call.path)])
    store = MemorySessionStore()
    api = FinanceAPI(ApiClient(store, base_url=BASE_URL, transport=transport))
    app.dependency_overrides[get_finance_api] = lambda: api
    yield responses, store, transport
    app.dependency_overrides.clear()


@pytest.fixture
def http():
    client = TestClient(app)
    token = client.get("/auth/csrf").json()["token"]
    client.headers.update({"X-CSRF-Token": token})
    return client


def test_login_requires_csrf_token(backend) -> None:
    response = TestClient(app).post("/auth/login", json={"username": "ana", "password": "x"})

    assert response.status_code == 400


def test_login_then_list_incomes(backend, http) -> None:
    responses, store, _ = backend
    responses[("POST", "/api/login/")] = (200, {"access": "a1", "refresh": "r1"})
    responses[("GET", "/api/finanzas/ingresos/")] = (
        200,
        [{"id": 1, "cantidad": "1500.00", "fecha": "2026-10-01", "descripcion": "Nómina"}],
    )

    login = http.post("/auth/login", json={"username": "ana", "password": "secret"})
    incomes = http.get("/api/incomes")

    assert login.status_code == 200
    assert login.json() == {"user": {"username": "ana"}}
    assert store.get_access_token() == "a1"
    assert incomes.json() == [
        {
            "id": 1,
            "amount": 1500.0,
            "date": "2026-10-01",
            "description": "Nómina",
            "category": None,
        }
    ]


def test_unauthenticated_listing_is_401(backend, http) -> None:
    response = http.get("/api/expenses")

    assert response.status_code == 401


def test_expired_session_is_401_and_clears_store(backend, http) -> None:
    responses, store, _ = backend
    store.set_session("a1", "r1", {"username": "ana"})
    responses[("GET", "/api/finanzas/gastos/")] = (401, {"detail": "expired"})
    responses[("POST", "/api/token/refresh/")] = (401, {"detail": "expired"})

    response = http.get("/api/expenses")

    assert response.status_code == 401
    assert store.is_authenticated() is False
    assert http.get("/auth/me").json() == {"authenticated": False, "user": None}


def test_upstream_error_status_is_forwarded(backend, http) -> None:
    responses, store, _ = backend
    store.set_session("a1", "r1", {"username": "ana"})
    responses[("DELETE", "/api/finanzas/gastos/4/")] = (404, {"detail": "No encontrado."})

    response = http.delete("/api/expenses/4")

    assert response.status_code == 404
    assert response.json() == {"detail": "No encontrado."}


def test_goal_over_target_is_rejected_before_upstream(backend, http) -> None:
    responses, store, transport = backend
    store.set_session("a1", "r1", {"username": "ana"})

    response = http.post("/api/goals", json={"nombre": "Auto", "meta": 100, "actual": 150})

    assert response.status_code == 400
    assert transport.calls == []


def test_goal_listing_includes_progress(backend, http) -> None:
    responses, store, _ = backend
    store.set_session("a1", "r1", {"username": "ana"})
    responses[("GET", "/api/finanzas/objetivo/")] = (
        200,
        [{"id": 2, "nombre": "Viaje", "meta": 2000, "actual": 2500}],
    )

    goals = http.get("/api/goals").json()

    assert goals[0]["completion_percentage"] == 125
    assert goals[0]["completed"] is True


def test_evolution_rejects_unsupported_window(backend, http) -> None:
    _, store, transport = backend
    store.set_session("a1", "r1", {"username": "ana"})

    response = http.get("/api/reports/evolution", params={"months": 7})

    assert response.status_code == 400
    assert transport.calls == []


def test_dashboard_totals(backend, http) -> None:
    responses, store, _ = backend
    store.set_session("a1", "r1", {"username": "ana"})
    responses[("GET", "/api/finanzas/ingresos/")] = (
        200,
        [{"cantidad": 1000, "fecha": "2026-10-01", "descripcion": "Nómina"}],
    )
    responses[("GET", "/api/finanzas/gastos/")] = (
        200,
        [{"cantidad": 400, "fecha": "2026-10-02", "descripcion": "Alquiler"}],
    )
    responses[("GET", "/api/finanzas/ahorros/")] = (200, [])
    responses[("GET", "/api/finanzas/objetivo/")] = (200, [])

    body = http.get("/api/dashboard").json()

    assert body["totals"]["balance"] == 600
    assert [row["description"] for row in body["recent"]] == ["Alquiler", "Nómina"]


def test_csv_export_of_savings(backend, http) -> None:
    responses, store, _ = backend
    store.set_session("a1", "r1", {"username": "ana"})
    responses[("GET", "/api/finanzas/ahorros/")] = (
        200,
        [
            {
                "id": 1,
                "nombre": "=Fondo",
                "monto": 300,
                "fecha_inicio": "2026-01-01",
                "fecha_fin": "2027-01-01",
            }
        ],
    )

    response = http.get("/reports/export.csv", params={"section": "savings"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    lines = response.text.splitlines()
    assert lines[0] == "Name,Type,Start date,End date,Amount,Description"
    assert lines[1].startswith("\t=Fondo,")
    assert "$300.00" in lines[1]


def test_export_rejects_unknown_section(backend, http) -> None:
    response = http.get("/reports/export.csv", params={"section": "everything"})

    assert response.status_code == 400


def test_in_flight_guard_rejects_concurrent_save_of_same_record() -> None:
    guard = InFlightGuard()

    with guard.hold("goals", 1):
        with pytest.raises(HTTPException) as excinfo:
            with guard.hold("goals", 1):
                pass
        with guard.hold("goals", 2):
            pass

    assert excinfo.value.status_code == 409
    with guard.hold("goals", 1):
        pass


def test_password_mismatch_is_400_without_upstream_call(backend, http) -> None:
    _, store, transport = backend
    store.set_session("a1", "r1", {"username": "ana"})

    response = http.post(
        "/auth/password",
        json={
            "current_password": "old",
            "new_password": "new-secret",
            "confirm_password": "typo",
        },
    )

    assert response.status_code == 400
    assert transport.calls == []


def test_goal_category_report_sums_saved_amounts(backend, http) -> None:
    responses, store, _ = backend
    store.set_session("a1", "r1", {"username": "ana"})
    responses[("GET", "/api/finanzas/objetivo/")] = (
        200,
        [
            {"id": 1, "nombre": "Viaje", "meta": 2000, "actual": 500},
            {"id": 2, "nombre": "Viaje", "meta": 1000, "actual": 300},
        ],
    )

    exact = http.get("/api/reports/categories", params={"kind": "goal", "mode": "exact"})
    keyword = http.get("/api/reports/categories", params={"kind": "goal", "mode": "keyword"})

    assert exact.json() == [{"name": "Viaje", "value": 800}]
    assert keyword.json() == [{"name": "Other", "value": 800}]
