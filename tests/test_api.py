from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from grid_api.errors import Result
from grid_api.main import app, get_executor
from grid_api.models import GridDataResponse
from grid_api.security import Caller, get_current_caller

from conftest import seed_buses

EXECUTE = "/api/DynamicGrid/execute"


def as_caller(*roles):
    app.dependency_overrides[get_current_caller] = lambda: Caller(user_id="user-1", roles=list(roles))


@pytest.fixture
def client(executor):
    app.dependency_overrides[get_executor] = lambda: executor
    as_caller("Engineer")
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health_check(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_requires_bearer_token(executor):
    app.dependency_overrides[get_executor] = lambda: executor
    try:
        response = TestClient(app).post(EXECUTE, json={"procedureName": "sp_Grid_Buses"})
    finally:
        app.dependency_overrides.clear()
    assert response.status_code in (401, 403)


class TestExecuteEndpoint:
    def test_returns_rows_and_columns(self, client, engine):
        seed_buses(engine, 3)
        response = client.post(EXECUTE, json={"procedureName": "sp_Grid_Buses", "pageSize": 15})
        assert response.status_code == 200
        body = response.json()
        assert body["totalCount"] == 3
        assert body["paginationMode"] == "AllLoaded"
        assert body["rows"][0]["Id"] == "1_1"
        assert {col["field"] for col in body["columns"]} >= {"ibus", "baskv"}

    def test_unknown_procedure(self, client):
        response = client.post(EXECUTE, json={"procedureName": "sp_Grid_Nope"})
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "message": "Procedure not found: sp_Grid_Nope",
            "errorCode": "NOT_FOUND",
        }

    def test_bad_filter(self, client):
        response = client.post(EXECUTE, json={
            "procedureName": "sp_Grid_Buses",
            "filterModel": {"password": {"filterType": "text", "filter": "x"}},
        })
        assert response.status_code == 400
        assert response.json()["errorCode"] == "BAD_FILTER"

    def test_malformed_request(self, client):
        response = client.post(EXECUTE, json={"pageNumber": 0})
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["errorCode"] == "VALIDATION_FAILED"

    def test_session_header_is_forwarded(self, client):
        mock_executor = Mock()
        mock_executor.execute_read.return_value = Result.success(GridDataResponse(total_count=0))
        app.dependency_overrides[get_executor] = lambda: mock_executor

        response = client.post(
            EXECUTE,
            json={"procedureName": "sp_Grid_Buses"},
            headers={"X-Grid-Session": "tab-7"},
        )

        assert response.status_code == 200
        request, roles, session = mock_executor.execute_read.call_args[0]
        assert request.procedure_name == "sp_Grid_Buses"
        assert roles == ["Engineer"]
        assert session == "tab-7"

    def test_unexpected_error_is_internal(self, client):
        mock_executor = Mock()
        mock_executor.execute_read.side_effect = RuntimeError("registry unavailable")
        app.dependency_overrides[get_executor] = lambda: mock_executor

        response = client.post(EXECUTE, json={"procedureName": "sp_Grid_Buses"})

        assert response.status_code == 500
        assert response.json()["errorCode"] == "INTERNAL"
        assert "registry unavailable" not in response.json()["message"]


class TestWriteEndpoints:
    def test_update_row(self, client, engine):
        seed_buses(engine, 2)
        response = client.post("/api/DynamicGrid/update-row", json={
            "procedureName": "sp_Grid_Buses", "rowId": "2_1", "changes": {"name": "NEW"},
        })
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["rowsAffected"] == 1
        assert body["updatedRow"]["name"] == "NEW"

    def test_update_rule_violation(self, client, engine):
        seed_buses(engine, 1)
        response = client.post("/api/DynamicGrid/update-row", json={
            "procedureName": "sp_Grid_Buses", "rowId": "1_1", "changes": {"baskv": -5},
        })
        assert response.status_code == 400
        assert response.json()["errorCode"] == "VALIDATION_FAILED"

    def test_delete_denied_for_engineer(self, client, engine):
        seed_buses(engine, 1)
        response = client.post("/api/DynamicGrid/delete-row", json={
            "procedureName": "sp_Grid_Buses", "rowId": "1_1",
        })
        assert response.status_code == 403
        assert response.json()["errorCode"] == "UNAUTHORIZED"

    def test_delete_as_admin(self, client, engine):
        seed_buses(engine, 1)
        as_caller("Admin")
        response = client.post("/api/DynamicGrid/delete-row", json={
            "procedureName": "sp_Grid_Buses", "rowId": "1_1",
        })
        assert response.status_code == 200
        assert response.json()["rowsAffected"] == 1

    def test_create_unsupported(self, client):
        response = client.post("/api/DynamicGrid/create-row", json={
            "procedureName": "sp_Grid_Buses", "fieldValues": {"ibus": 9, "CaseNumber": 1},
        })
        assert response.status_code == 400
        assert response.json()["errorCode"] == "INSERT_NOT_SUPPORTED"

    def test_create_employee(self, client):
        response = client.post("/api/DynamicGrid/create-row", json={
            "procedureName": "sp_Grid_Example_Employees",
            "fieldValues": {"FirstName": "Lin", "Email": "lin@x.test"},
        })
        assert response.status_code == 200
        assert response.json()["createdRow"]["FirstName"] == "Lin"


class TestRegistryEndpoints:
    def test_available_procedures(self, client):
        body = client.get("/api/DynamicGrid/available-procedures").json()
        names = [proc["procedureName"] for proc in body["procedures"]]
        assert body["count"] == len(names)
        assert "sp_Grid_Bus_Aclines" in names
        assert "sp_Grid_Delete_Bus" not in names

    def test_refresh_requires_admin(self, client):
        response = client.post("/api/DynamicGrid/registry/refresh")
        assert response.status_code == 403

    def test_refresh_as_admin(self, client):
        as_caller("Admin")
        response = client.post("/api/DynamicGrid/registry/refresh")
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_refresh_admin_role_is_case_sensitive(self, client):
        as_caller("admin")
        response = client.post("/api/DynamicGrid/registry/refresh")
        assert response.status_code == 403
        assert response.json()["errorCode"] == "UNAUTHORIZED"
