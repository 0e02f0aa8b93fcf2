"""
Tests unitarios para las entidades Batch y FieldDescriptor.
"""
import pytest

from batchsync.domain.entities.batch import Batch, extract_record_id
from batchsync.domain.entities.field_schema import FieldDescriptor, parse_field_type
from batchsync.shared.constants.sync_constants import FieldType, Operation
from batchsync.shared.exceptions.domain import ValidationException


def _payload(**overrides):
    payload = {
        "operation": "create",
        "table_name": "XCORTE",
        "client_id": "ARAUC_XALAP",
        "field_id": "hash_id",
        "ver": "v1",
        "records": [{"FOLIO": "1", "__meta": {"hash_id": "h1"}}],
    }
    payload.update(overrides)
    return payload


class TestBatchBuild:
    def test_valid_payload(self):
        batch = Batch.from_job_payload(_payload(operation="CREATE"), job_id="job-9")

        assert batch.operation == Operation.CREATE
        assert batch.batch_version == "v1"
        assert batch.job_id == "job-9"
        assert batch.record_ids() == ["h1"]

    def test_plaza_is_client_prefix(self):
        assert Batch.from_job_payload(_payload()).plaza == "ARAUC"
        assert Batch.from_job_payload(_payload(client_id="SOLO")).plaza == "SOLO"

    def test_payload_roundtrip_keeps_metadata(self):
        batch = Batch.from_job_payload(_payload())
        payload = batch.to_job_payload()

        assert payload["ver"] == "v1"
        assert payload["operation"] == "create"
        assert payload["records"] == batch.records

    @pytest.mark.parametrize(
        "overrides,error_code",
        [
            ({"operation": None}, "MISSING_OPERATION"),
            ({"operation": "upsert"}, "INVALID_OPERATION"),
            ({"table_name": ""}, "MISSING_TABLE_NAME"),
            ({"table_name": "X; DROP TABLE y"}, "INVALID_TABLE_NAME"),
            ({"client_id": None}, "MISSING_CLIENT_ID"),
            ({"field_id": ""}, "INVALID_FIELD_ID"),
            ({"field_id": "hash-id"}, "INVALID_FIELD_ID"),
            ({"ver": None}, "MISSING_VERSION"),
            ({"records": "nope"}, "INVALID_RECORDS"),
            ({"records": []}, "EMPTY_RECORDS"),
            ({"records": ["texto"]}, "INVALID_RECORDS"),
            ({"records": [{"FOLIO": "1"}]}, "MISSING_RECORD_ID"),
            ({"records": [{"__meta": {"hash_id": ""}}]}, "MISSING_RECORD_ID"),
        ],
    )
    def test_malformed_batches_are_rejected(self, overrides, error_code):
        with pytest.raises(ValidationException) as exc_info:
            Batch.from_job_payload(_payload(**overrides))

        assert exc_info.value.error_code == error_code
        assert exc_info.value.status_code == 400


class TestExtractRecordId:
    def test_numeric_ids_become_strings(self):
        assert extract_record_id({"__meta": {"hash_id": 15}}, "hash_id") == "15"

    def test_missing_meta(self):
        assert extract_record_id({"__meta": "x"}, "hash_id") is None
        assert extract_record_id({}, "hash_id") is None


class TestFieldDescriptor:
    def test_from_dbf_code(self):
        descriptor = FieldDescriptor.from_dict({"name": "VTACONT", "type": "N", "length": "14", "decimal_places": 4})

        assert descriptor.type == FieldType.NUMBER
        assert descriptor.length == 14
        assert descriptor.decimal_places == 4
        assert descriptor.nullable is True

    def test_from_type_name(self):
        descriptor = FieldDescriptor.from_dict({"name": "PRECIO", "type": "fixed-decimal", "nullable": False})

        assert descriptor.type == FieldType.FIXED_DECIMAL
        assert descriptor.nullable is False

    @pytest.mark.parametrize("code,expected", [("C", FieldType.STRING), ("d", FieldType.DATE), ("L", FieldType.BOOLEAN), ("M", FieldType.MEMO)])
    def test_dbf_codes(self, code, expected):
        assert parse_field_type(code) == expected

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            FieldDescriptor.from_dict({"name": "X", "type": "blob"})

    def test_missing_name(self):
        with pytest.raises(ValueError):
            FieldDescriptor.from_dict({"type": "C"})
