from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from kwp_sync.errors import (AmbiguousPayloadError, MissingRequiredFieldError,
                             NotANumberError, NotInsertableError,
                             UnknownFieldError, ValueTooLongError)
from kwp_sync.mapper import PayloadMapper

from conftest import address_table, project_table

REFERENCES = ("ProjAdr", "RechAdr", "BauHrAdr", "CreateDate")


@pytest.fixture
def mapper() -> PayloadMapper:
    return PayloadMapper()


class TestPayloadMapper:
    def test_maps_keys_case_insensitively_onto_column_names(self, mapper):
        row = mapper.map(
            {"projnr": "P-1", "PROJBEZEICHNUNG": "Neubau", "abtnr": "4", "auftragssumme": "10,5"},
            project_table(),
            deferred_columns=REFERENCES,
        )
        assert row == {
            "ProjNr": "P-1",
            "ProjBezeichnung": "Neubau",
            "AbtNr": 4,
            "AuftragsSumme": Decimal("10.5"),
        }

    def test_payload_is_not_modified_and_mapping_repeats(self, mapper):
        payload = {"ProjNr": "P-1", "Beginn": "2024-05-01"}
        snapshot = dict(payload)
        first = mapper.map(payload, project_table(), deferred_columns=REFERENCES)
        second = mapper.map(payload, project_table(), deferred_columns=REFERENCES)
        assert payload == snapshot
        assert first == second
        assert first["Beginn"] == datetime(2024, 5, 1)

    @pytest.mark.parametrize("position", [0, 1, 2])
    def test_unknown_key_is_rejected_wherever_it_appears(self, mapper, position):
        items = [("ProjNr", "P-1"), ("ProjBezeichnung", "x")]
        items.insert(position, ("Farbe", "blau"))
        with pytest.raises(UnknownFieldError) as excinfo:
            mapper.map(dict(items), project_table(), label="projekt", deferred_columns=REFERENCES)
        assert excinfo.value.key == "Farbe"
        assert "projekt" in str(excinfo.value)

    def test_allowed_extra_keys_are_skipped(self, mapper):
        row = mapper.map(
            {"ProjNr": "P-1", "Adresse": {"name": "x"}},
            project_table(),
            allowed_extra_keys=("adresse",),
            deferred_columns=REFERENCES,
        )
        assert row == {"ProjNr": "P-1"}

    @pytest.mark.parametrize("key", ["LfdNr", "kennung"])
    def test_identity_and_rowversion_are_not_insertable(self, mapper, key):
        with pytest.raises(NotInsertableError):
            mapper.map({"ProjNr": "P-1", key: 1}, project_table(), deferred_columns=REFERENCES)

    def test_same_column_twice_is_ambiguous(self, mapper):
        with pytest.raises(AmbiguousPayloadError):
            mapper.map(
                {"ProjNr": "P-1", "projnr": "P-2"}, project_table(), deferred_columns=REFERENCES
            )

    def test_coercion_errors_are_tagged_with_payload_key(self, mapper):
        with pytest.raises(ValueTooLongError) as excinfo:
            mapper.map({"projnr": "X" * 21}, project_table(), label="projekt")
        assert excinfo.value.field == "projnr"
        assert excinfo.value.label == "projekt"

        with pytest.raises(NotANumberError):
            mapper.map({"ProjNr": "P-1", "AbtNr": "vier"}, project_table(), deferred_columns=REFERENCES)

    def test_missing_required_fields_reported_together(self, mapper):
        with pytest.raises(MissingRequiredFieldError) as excinfo:
            mapper.map({"Vorname": "Ada"}, address_table(), label="billing address")
        assert set(excinfo.value.fields) == {"AdrNrGes", "Name", "Ort"}

    def test_empty_string_counts_as_missing(self, mapper):
        with pytest.raises(MissingRequiredFieldError) as excinfo:
            mapper.map(
                {"AdrNrGes": "A1", "Name": "  ", "Ort": 1}, address_table()
            )
        assert excinfo.value.fields == ("Name",)

    def test_deferred_columns_are_not_required_yet(self, mapper):
        row = mapper.map({"AdrNrGes": "A1", "Name": "Acme"}, address_table(), deferred_columns=("ort",))
        assert row == {"AdrNrGes": "A1", "Name": "Acme"}
