"""Request and response envelopes. Wire names are camelCase."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class GridModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class GridDataRequest(GridModel):
    procedure_name: str = Field(..., min_length=1, description="Registered grid procedure")
    page_number: int = Field(default=1, ge=1, description="Page number (1-indexed)")
    page_size: Optional[int] = Field(default=None, ge=1, description="Defaults to the registration's page size")
    start_row: Optional[int] = Field(default=None, ge=1, description="First row, 1-based inclusive")
    end_row: Optional[int] = Field(default=None, ge=1, description="Last row, 1-based inclusive")
    sort_column: Optional[str] = None
    sort_direction: Optional[str] = "ASC"
    filter_model: Optional[Dict[str, Any]] = None
    filter_json: Optional[str] = Field(default=None, description="Filter model as a JSON string")
    search_term: Optional[str] = None

    @model_validator(mode="after")
    def check_row_range(self):
        if self.start_row is not None and self.end_row is not None and self.end_row < self.start_row:
            raise ValueError("endRow must not be lower than startRow")
        return self


class GridDataResponse(GridModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    columns: List[Dict[str, Any]] = Field(default_factory=list)
    total_count: int = 0
    page_number: int = 1
    page_size: int = 0
    total_pages: int = 0
    last_row: Optional[int] = None
    pagination_mode: Optional[str] = None


class RowUpdateRequest(GridModel):
    procedure_name: str = Field(..., min_length=1)
    row_id: Union[int, str]
    changes: Dict[str, Any] = Field(default_factory=dict)


class RowDeleteRequest(GridModel):
    procedure_name: str = Field(..., min_length=1)
    row_id: Union[int, str]


class RowCreateRequest(GridModel):
    procedure_name: str = Field(..., min_length=1)
    field_values: Dict[str, Any] = Field(default_factory=dict)


class RowWriteResponse(GridModel):
    success: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    rows_affected: Optional[int] = None


class RowUpdateResponse(RowWriteResponse):
    updated_row: Optional[Dict[str, Any]] = None


class RowDeleteResponse(RowWriteResponse):
    pass


class RowCreateResponse(RowWriteResponse):
    created_row: Optional[Dict[str, Any]] = None


class ProcedureInfo(GridModel):
    procedure_name: str
    display_name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    is_active: bool = True
    requires_auth: bool = True
    allowed_roles: List[str] = Field(default_factory=list)
    default_page_size: int = 15
    max_page_size: int = 1000
