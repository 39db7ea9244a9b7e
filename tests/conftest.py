import os

# Settings are read at import time
os.environ.setdefault("JWT_ISSUER", "https://idp.test/oauth2/default")
os.environ.setdefault("JWT_AUDIENCE", "api://grid-test")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from grid_api.config import ENTITY_REGISTRY
from grid_api.database import dispose_engines, register_engine
from grid_api.entities import EntityCatalog
from grid_api.executor import DynamicProcedureExecutor
from grid_api.pagination import PaginationSelector
from grid_api.registry import ProcedureRegistration, ProcedureRegistry, StaticRegistryLoader
from grid_api.storage import GridStorage

SCHEMA = [
    """
    CREATE TABLE "Bus" (
        "ibus" INTEGER NOT NULL,
        "CaseNumber" INTEGER NOT NULL,
        "name" TEXT,
        "baskv" REAL,
        "iarea" INTEGER,
        "zone" INTEGER,
        "iowner" INTEGER,
        "ide" INTEGER,
        "vm" REAL,
        "va" REAL,
        "nvhi" REAL,
        "nvlo" REAL,
        "evhi" REAL,
        "evlo" REAL,
        PRIMARY KEY ("ibus", "CaseNumber")
    )
    """,
    """
    CREATE TABLE "Acline" (
        "ckt" TEXT NOT NULL,
        "ibus" INTEGER NOT NULL,
        "jbus" INTEGER NOT NULL,
        "CaseNumber" INTEGER NOT NULL,
        "name" TEXT,
        "rpu" REAL,
        "xpu" REAL,
        "bpu" REAL,
        "stat" INTEGER,
        PRIMARY KEY ("ckt", "ibus", "jbus", "CaseNumber")
    )
    """,
    """
    CREATE TABLE "Transformer" (
        "ckt" TEXT NOT NULL,
        "ibus" INTEGER NOT NULL,
        "jbus" INTEGER NOT NULL,
        "kbus" INTEGER NOT NULL,
        "CaseNumber" INTEGER NOT NULL,
        "name" TEXT,
        "stat" INTEGER,
        PRIMARY KEY ("ckt", "ibus", "jbus", "kbus", "CaseNumber")
    )
    """,
    """
    CREATE TABLE "Employees" (
        "Id" INTEGER PRIMARY KEY AUTOINCREMENT,
        "FirstName" TEXT,
        "LastName" TEXT,
        "Email" TEXT UNIQUE,
        "Phone" TEXT,
        "Status" TEXT,
        "Location" TEXT,
        "Salary" REAL,
        "PerformanceRating" REAL,
        "YearsExperience" INTEGER
    )
    """,
]


def make_engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    with engine.begin() as conn:
        for statement in SCHEMA:
            conn.execute(text(statement))
    return engine


def registration(name, roles=("Admin", "Engineer"), **overrides):
    return ProcedureRegistration(name=name, allowed_roles=list(roles), **overrides)


def default_registrations():
    return [
        registration("sp_Grid_Buses", display_name="Buses", category="PowerSystem"),
        registration("sp_Grid_Update_Bus"),
        registration("sp_Grid_Delete_Bus", roles=("Admin",)),
        registration("sp_Grid_Bus_Aclines", roles=("Engineer",)),
        registration("sp_Grid_Update_Acline", roles=("Engineer",)),
        registration("sp_Grid_Bus_Transformers"),
        registration("sp_Grid_Update_Transformer", is_active=False),
        registration("sp_Grid_Example_Employees", requires_auth=False, default_page_size=10),
        registration("sp_Grid_Update_Employee", requires_auth=False),
        registration("sp_Grid_Delete_Employee", requires_auth=False),
        registration("sp_Grid_Insert_Employee", requires_auth=False),
        registration("sp_Grid_Retired", is_active=False),
    ]


def seed_buses(engine, count, case_number=1, **values):
    rows = [
        {
            "ibus": i,
            "case": case_number,
            "name": values.get("name", f"BUS-{i}"),
            "baskv": values.get("baskv", float(i)),
        }
        for i in range(1, count + 1)
    ]
    with engine.begin() as conn:
        conn.execute(
            text(
                'INSERT INTO "Bus" ("ibus", "CaseNumber", "name", "baskv", "nvhi", "nvlo", "evhi", "evlo") '
                "VALUES (:ibus, :case, :name, :baskv, 1.1, 0.9, 1.2, 0.8)"
            ),
            rows,
        )


def seed_employees(engine, people):
    with engine.begin() as conn:
        conn.execute(
            text(
                'INSERT INTO "Employees" ("FirstName", "LastName", "Email", "Status", "Salary") '
                "VALUES (:first, :last, :email, :status, :salary)"
            ),
            people,
        )


@pytest.fixture
def engine():
    engine = make_engine()
    register_engine(None, engine)
    yield engine
    dispose_engines()


@pytest.fixture
def catalog():
    return EntityCatalog.from_config(ENTITY_REGISTRY)


@pytest.fixture
def registry():
    return ProcedureRegistry(StaticRegistryLoader(default_registrations()))


@pytest.fixture
def executor(engine, registry, catalog):
    return DynamicProcedureExecutor(
        registry=registry,
        catalog=catalog,
        storage=GridStorage(),
        selector=PaginationSelector(threshold=1000),
    )
