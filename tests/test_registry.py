from unittest.mock import Mock

import pytest
from sqlalchemy import text

from grid_api.authorization import authorize, available_procedures, check_access
from grid_api.errors import ErrorKind
from grid_api.registry import (
    DatabaseRegistryLoader,
    ProcedureRegistration,
    ProcedureRegistry,
    StaticRegistryLoader,
    parse_allowed_roles,
)

from conftest import registration


@pytest.mark.parametrize("raw,expected", [
    ('["Admin", "Engineer"]', ["Admin", "Engineer"]),
    (["Viewer"], ["Viewer"]),
    ("Admin,Engineer", []),
    ('{"role": "Admin"}', []),
    ('["", 7, "Ops"]', ["Ops"]),
    (None, []),
])
def test_parse_allowed_roles_fails_closed(raw, expected):
    assert parse_allowed_roles(raw) == expected


class TestAuthorize:
    def test_role_overlap_allows(self):
        decision = authorize(registration("sp_Grid_Buses", roles=("Engineer",)), ["Viewer", "Engineer"])
        assert decision.allowed

    def test_role_mismatch_is_unauthorized(self):
        decision = authorize(registration("sp_Grid_Buses", roles=("Admin",)), ["Viewer"])
        assert not decision.allowed
        assert decision.reason is ErrorKind.UNAUTHORIZED
        assert decision.failure().kind.status_code == 403

    def test_missing_registration_is_not_found(self):
        decision = authorize(None, ["Admin"], "sp_Grid_Nothing")
        assert decision.reason is ErrorKind.NOT_FOUND
        assert "sp_Grid_Nothing" in decision.message

    def test_inactive_is_not_found_even_for_matching_role(self):
        decision = authorize(registration("sp_Grid_Old", is_active=False), ["Admin"])
        assert decision.reason is ErrorKind.NOT_FOUND

    def test_empty_allowed_roles_denies(self):
        decision = authorize(registration("sp_Grid_Buses", roles=()), ["Admin"])
        assert decision.reason is ErrorKind.UNAUTHORIZED

    def test_auth_not_required_allows_anyone(self):
        decision = authorize(registration("sp_Grid_Public", roles=(), requires_auth=False), [])
        assert decision.allowed


class TestProcedureRegistry:
    def test_snapshot_is_cached_until_invalidated(self):
        loader = Mock(return_value=[registration("sp_Grid_Buses")])
        registry = ProcedureRegistry(loader, ttl_seconds=300)

        assert registry.get("sp_Grid_Buses").name == "sp_Grid_Buses"
        assert registry.get("sp_Grid_Other") is None
        assert loader.call_count == 1

        registry.invalidate()
        registry.get("sp_Grid_Buses")
        assert loader.call_count == 2

    def test_blank_name_never_loads(self):
        loader = Mock(return_value=[])
        assert ProcedureRegistry(loader).get("") is None
        loader.assert_not_called()

    def test_available_procedures_filters_and_sorts(self, registry):
        names = [reg.name for reg in available_procedures(registry, ["Engineer"])]
        assert names == sorted(names)
        assert "sp_Grid_Bus_Aclines" in names
        assert "sp_Grid_Delete_Bus" not in names
        assert "sp_Grid_Retired" not in names
        assert "sp_Grid_Example_Employees" in names

    def test_check_access_uses_registry(self, registry):
        assert check_access(registry, "sp_Grid_Buses", ["Admin"]).allowed
        assert check_access(registry, "sp_Grid_Unknown", ["Admin"]).reason is ErrorKind.NOT_FOUND


class TestDatabaseRegistryLoader:
    def test_loads_rows_from_registry_table(self, engine):
        with engine.begin() as conn:
            conn.execute(text("""
                CREATE TABLE "StoredProcedureRegistry" (
                    "ProcedureName" TEXT PRIMARY KEY,
                    "DisplayName" TEXT,
                    "Description" TEXT,
                    "Category" TEXT,
                    "IsActive" BOOLEAN,
                    "RequiresAuth" BOOLEAN,
                    "AllowedRoles" TEXT,
                    "DatabaseName" TEXT,
                    "DefaultPageSize" INTEGER,
                    "MaxPageSize" INTEGER
                )
            """))
            conn.execute(text("""
                INSERT INTO "StoredProcedureRegistry" VALUES
                ('sp_Grid_Buses', 'Buses', 'Bus data', 'PowerSystem', 1, 1,
                 '["Admin","Engineer"]', NULL, 25, 500),
                ('sp_Grid_Broken', NULL, NULL, NULL, 1, 1, 'not json', 'PowerSystemDB', NULL, NULL)
            """))

        registrations = {reg.name: reg for reg in DatabaseRegistryLoader()()}

        buses = registrations["sp_Grid_Buses"]
        assert buses.allowed_roles == ["Admin", "Engineer"]
        assert buses.default_page_size == 25
        assert buses.max_page_size == 500
        assert buses.database_routing_key is None

        broken = registrations["sp_Grid_Broken"]
        assert broken.allowed_roles == []
        assert broken.default_page_size == 15
        assert broken.database_routing_key == "PowerSystemDB"

    def test_missing_table_raises_runtime_error(self, engine):
        with pytest.raises(RuntimeError):
            DatabaseRegistryLoader()()


def test_static_loader_returns_copies():
    loader = StaticRegistryLoader([ProcedureRegistration(name="sp_Grid_Buses")])
    first = loader()
    first.clear()
    assert len(loader()) == 1
