from unittest.mock import Mock

from sqlalchemy import text

from grid_api.metadata import (
    ColumnAugmentation,
    ColumnMetadataStore,
    DatabaseColumnMetadataLoader,
    StaticColumnMetadataLoader,
)

COLUMNS = [{"field": "iarea", "type": "number"}, {"field": "name", "type": "text"}]


class TestColumnMetadataStore:
    def test_augment_merges_by_field_and_copies(self):
        store = ColumnMetadataStore(StaticColumnMetadataLoader([
            ColumnAugmentation(procedure_name="sp_Grid_Buses", field="iarea",
                               dropdown_config={"type": "static", "staticValues": [1, 2]}),
            ColumnAugmentation(procedure_name="sp_Grid_Buses", field="name",
                               link_config={"route": "/bus"}),
        ]))
        merged = store.augment("sp_Grid_Buses", COLUMNS)
        assert merged[0]["dropdownConfig"]["staticValues"] == [1, 2]
        assert merged[1]["linkConfig"] == {"route": "/bus"}
        assert "dropdownConfig" not in COLUMNS[0]

    def test_other_procedures_untouched(self):
        store = ColumnMetadataStore(StaticColumnMetadataLoader([
            ColumnAugmentation(procedure_name="sp_Grid_Buses", field="iarea", dropdown_config={}),
        ]))
        assert store.augment("sp_Grid_Bus_Aclines", COLUMNS) == COLUMNS

    def test_loads_once_until_invalidated(self):
        loader = Mock(return_value=[])
        store = ColumnMetadataStore(loader)
        store.augment("sp_Grid_Buses", COLUMNS)
        store.augment("sp_Grid_Buses", COLUMNS)
        store.invalidate()
        store.augment("sp_Grid_Buses", COLUMNS)
        assert loader.call_count == 2


def test_database_loader_reads_active_rows(engine):
    with engine.begin() as conn:
        conn.execute(text("""
            CREATE TABLE "ColumnMetadata" (
                "ProcedureName" TEXT, "ColumnName" TEXT, "CellEditor" TEXT,
                "DropdownType" TEXT, "StaticValuesJson" TEXT, "MasterTable" TEXT,
                "ValueField" TEXT, "LabelField" TEXT, "DependsOnJson" TEXT,
                "LinkConfig" TEXT, "IsActive" BOOLEAN
            )
        """))
        conn.execute(text("""
            INSERT INTO "ColumnMetadata" VALUES
            ('sp_Grid_Buses', 'iarea', 'dropdown', 'master', NULL, 'Area', 'iarea', 'arname',
             '["CaseNumber"]', NULL, 1),
            ('sp_Grid_Buses', 'name', NULL, NULL, NULL, NULL, NULL, NULL, NULL,
             '{"route": "/buses/detail"}', 1),
            ('sp_Grid_Buses', 'zone', 'dropdown', 'static', '[1, 2]', NULL, NULL, NULL, NULL, NULL, 0),
            ('sp_Grid_Buses', 'vm', 'agNumberCellEditor', NULL, NULL, NULL, NULL, NULL, NULL, NULL, 1)
        """))

    loaded = {aug.field: aug for aug in DatabaseColumnMetadataLoader()()}

    assert set(loaded) == {"iarea", "name"}
    assert loaded["iarea"].dropdown_config["masterTable"] == "Area"
    assert loaded["iarea"].dropdown_config["dependsOn"] == ["CaseNumber"]
    assert loaded["name"].link_config == {"route": "/buses/detail"}
