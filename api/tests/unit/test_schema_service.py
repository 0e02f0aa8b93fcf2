import json

import pytest

from batchsync.infrastructure.schema.schema_service import SchemaService
from batchsync.shared.constants.sync_constants import FieldType


@pytest.fixture
def schemas_dir(tmp_path):
    (tmp_path / "XCORTE.json").write_text(
        json.dumps({"fields": [
            {"name": "FOLIO", "type": "C", "length": 10},
            {"name": "VTACONT", "type": "N", "length": 14, "decimal_places": 4},
        ]}),
        encoding="utf-8",
    )
    return tmp_path


def test_load_table_schema(schemas_dir):
    service = SchemaService(schemas_dir)

    schema = service.load_table_schema("XCORTE")

    assert [f.name for f in schema] == ["FOLIO", "VTACONT"]
    assert schema[1].type == FieldType.NUMBER


def test_schema_is_cached(schemas_dir):
    service = SchemaService(schemas_dir)
    first = service.load_table_schema("XCORTE")

    (schemas_dir / "XCORTE.json").write_text(json.dumps({"fields": []}), encoding="utf-8")

    assert service.load_table_schema("XCORTE") is first
    assert service.reload("XCORTE") == []


def test_clear_empties_cache(schemas_dir):
    service = SchemaService(schemas_dir)
    service.load_table_schema("XCORTE")
    (schemas_dir / "XCORTE.json").write_text(json.dumps({"fields": [{"name": "A", "type": "M"}]}), encoding="utf-8")

    service.clear()

    assert [f.name for f in service.load_table_schema("XCORTE")] == ["A"]


def test_missing_schema_is_none(tmp_path):
    service = SchemaService(tmp_path)

    assert service.load_table_schema("NOEXISTE") is None
    assert service.is_registered("NOEXISTE") is False


def test_malformed_schema_is_none(tmp_path):
    (tmp_path / "ROTA.json").write_text("{no es json", encoding="utf-8")
    (tmp_path / "SINFIELDS.json").write_text(json.dumps({"campos": []}), encoding="utf-8")
    (tmp_path / "TIPOMALO.json").write_text(json.dumps({"fields": [{"name": "X", "type": "Z"}]}), encoding="utf-8")
    service = SchemaService(tmp_path)

    assert service.load_table_schema("ROTA") is None
    assert service.load_table_schema("SINFIELDS") is None
    assert service.load_table_schema("TIPOMALO") is None
    assert service.is_registered("ROTA") is True


def test_bundled_xcorte_schema_loads():
    from pathlib import Path

    schemas = Path(__file__).resolve().parents[2] / "schemas"
    schema = SchemaService(schemas).load_table_schema("XCORTE")

    assert schema
    assert {f.type for f in schema} >= {FieldType.STRING, FieldType.NUMBER, FieldType.DATE}
