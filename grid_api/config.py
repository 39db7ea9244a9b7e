import json
import os

from dotenv import load_dotenv

load_dotenv()

# Runtime settings
PAGINATION_THRESHOLD = int(os.environ.get("GRID_PAGINATION_THRESHOLD", 1000))
REGISTRY_TTL_SECONDS = int(os.environ.get("GRID_REGISTRY_TTL_SECONDS", 300))
SESSION_TTL_SECONDS = int(os.environ.get("GRID_SESSION_TTL_SECONDS", 3600))
SESSION_CACHE_SIZE = int(os.environ.get("GRID_SESSION_CACHE_SIZE", 10_000))
QUERY_TIMEOUT_MS = int(os.environ.get("GRID_QUERY_TIMEOUT_MS", 30_000))

# routing key -> SQLAlchemy URL, e.g. {"PowerSystemDB": "postgresql+pg8000://..."}
DATABASE_ROUTES = json.loads(os.environ.get("GRID_DATABASE_ROUTES") or "{}")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "CORS_ORIGINS", "http://localhost:4200,http://localhost:3000"
    ).split(",")
    if origin.strip()
]

ADMIN_ROLE = os.environ.get("GRID_ADMIN_ROLE", "Admin")

# Rate limiting (slowapi)
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
READ_RATE_LIMIT = os.environ.get("GRID_READ_RATE_LIMIT", "100/minute")
WRITE_RATE_LIMIT = os.environ.get("GRID_WRITE_RATE_LIMIT", "50/minute")

# Grid entities. The key is the entity name; "procedures" lists the grid read
# procedures served from the table. Column types are declared here and never
# inferred from request values.
ENTITY_REGISTRY = {
    "Bus": {
        "procedures": ["sp_Grid_Buses"],
        "table": "Bus",
        "key": [("ibus", "int"), ("CaseNumber", "int")],
        "columns": {
            "ibus": {"type": "number", "header": "Bus Number", "width": 120, "searchable": True},
            "CaseNumber": {"type": "number", "header": "Case Number", "width": 130, "searchable": True},
            "name": {"type": "text", "header": "Name", "width": 200, "editable": True,
                     "cell_editor": "agTextCellEditor", "searchable": True},
            "baskv": {"type": "number", "header": "Base KV", "width": 120, "editable": True,
                      "cell_editor": "agNumberCellEditor", "searchable": True},
            "iarea": {"type": "number", "header": "Area", "width": 100, "editable": True,
                      "cell_editor": "dropdown"},
            "zone": {"type": "number", "header": "Zone", "width": 100, "editable": True,
                     "cell_editor": "dropdown"},
            "iowner": {"type": "number", "header": "Owner", "width": 100, "editable": True,
                       "cell_editor": "agNumberCellEditor"},
            "ide": {"type": "number", "header": "IDE", "width": 100, "editable": True,
                    "cell_editor": "agNumberCellEditor"},
            "vm": {"type": "number", "header": "VM", "width": 100, "editable": True,
                   "cell_editor": "agNumberCellEditor", "group": "Voltage"},
            "va": {"type": "number", "header": "VA", "width": 100, "editable": True,
                   "cell_editor": "agNumberCellEditor", "group": "Voltage"},
            "nvhi": {"type": "number", "header": "NV High", "width": 110, "editable": True,
                     "cell_editor": "agNumberCellEditor", "group": "Normal Limits"},
            "nvlo": {"type": "number", "header": "NV Low", "width": 110, "editable": True,
                     "cell_editor": "agNumberCellEditor", "group": "Normal Limits"},
            "evhi": {"type": "number", "header": "EV High", "width": 110, "editable": True,
                     "cell_editor": "agNumberCellEditor", "group": "Emergency Limits"},
            "evlo": {"type": "number", "header": "EV Low", "width": 110, "editable": True,
                     "cell_editor": "agNumberCellEditor", "group": "Emergency Limits"},
        },
        "ranges": [
            {"field": "baskv", "min": 0, "max": 1000,
             "message": "Base KV must be between 0 and 1000"},
        ],
        "orderings": [
            {"high": "nvhi", "low": "nvlo",
             "message": "Normal voltage high must be greater than normal voltage low"},
            {"high": "evhi", "low": "evlo",
             "message": "Emergency voltage high must be greater than emergency voltage low"},
        ],
    },
    "Acline": {
        "procedures": ["sp_Grid_Bus_Aclines"],
        "table": "Acline",
        "label": "ACline",
        "key": [("ckt", "str"), ("ibus", "int"), ("jbus", "int"), ("CaseNumber", "int")],
        "columns": {
            "ckt": {"type": "text", "header": "Circuit", "width": 90, "searchable": True},
            "ibus": {"type": "number", "header": "From Bus", "width": 110},
            "jbus": {"type": "number", "header": "To Bus", "width": 110},
            "CaseNumber": {"type": "number", "header": "Case Number", "width": 130},
            "name": {"type": "text", "header": "Name", "width": 180, "editable": True,
                     "cell_editor": "agTextCellEditor", "searchable": True},
            "rpu": {"type": "number", "header": "R (pu)", "width": 100, "editable": True},
            "xpu": {"type": "number", "header": "X (pu)", "width": 100, "editable": True},
            "bpu": {"type": "number", "header": "B (pu)", "width": 100, "editable": True},
            "stat": {"type": "number", "header": "Status", "width": 90, "editable": True},
        },
        "ranges": [
            {"field": "stat", "min": 0, "max": 1, "message": "Status must be 0 or 1"},
        ],
    },
    "Transformer": {
        "procedures": ["sp_Grid_Bus_Transformers"],
        "table": "Transformer",
        "key": [("ckt", "str"), ("ibus", "int"), ("jbus", "int"), ("kbus", "int"),
                ("CaseNumber", "int")],
        "columns": {
            "ckt": {"type": "text", "header": "Circuit", "width": 90, "searchable": True},
            "ibus": {"type": "number", "header": "Winding 1 Bus", "width": 130},
            "jbus": {"type": "number", "header": "Winding 2 Bus", "width": 130},
            "kbus": {"type": "number", "header": "Winding 3 Bus", "width": 130},
            "CaseNumber": {"type": "number", "header": "Case Number", "width": 130},
            "name": {"type": "text", "header": "Name", "width": 180, "editable": True,
                     "cell_editor": "agTextCellEditor", "searchable": True},
            "stat": {"type": "number", "header": "Status", "width": 90, "editable": True},
        },
        "ranges": [
            {"field": "stat", "min": 0, "max": 4, "message": "Status must be between 0 and 4"},
        ],
    },
    "Employee": {
        "procedures": ["sp_Grid_Example_Employees"],
        "table": "Employees",
        "key": [("Id", "int")],
        "generated_key": True,
        "columns": {
            "Id": {"type": "number", "header": "ID", "width": 80, "editable": False},
            "FirstName": {"type": "text", "header": "First Name", "width": 140, "editable": True,
                          "searchable": True},
            "LastName": {"type": "text", "header": "Last Name", "width": 140, "editable": True,
                         "searchable": True},
            "Email": {"type": "text", "header": "Email", "width": 220, "editable": True,
                      "searchable": True},
            "Phone": {"type": "text", "header": "Phone", "width": 140, "editable": True},
            "Status": {"type": "text", "header": "Status", "width": 110, "editable": True,
                       "cell_editor": "agSelectCellEditor"},
            "Location": {"type": "text", "header": "Location", "width": 140, "editable": True},
            "Salary": {"type": "number", "header": "Salary", "width": 120, "editable": True},
            "PerformanceRating": {"type": "number", "header": "Rating", "width": 100,
                                  "editable": True},
            "YearsExperience": {"type": "number", "header": "Experience", "width": 110,
                                "editable": True},
        },
        "ranges": [
            {"field": "Salary", "min": 0, "message": "Salary cannot be negative"},
            {"field": "PerformanceRating", "min": 0, "max": 5,
             "message": "Performance rating must be between 0 and 5"},
        ],
    },
}

##WHY DECLARED HERE?
##Adding a new grid requires only a registry row plus an entry above.
##Security team can audit every reachable table and column in one file.
