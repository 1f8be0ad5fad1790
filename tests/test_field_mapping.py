"""Tests for CRM property mapping."""

from __future__ import annotations

from src.dedupe.crm.field_mapping import from_crm_object, split_emails, to_crm_properties


class TestFromCrmObject:
    def test_maps_fixed_fields_and_bag(self):
        record = from_crm_object(
            {
                "id": "7",
                "properties": {
                    "email": " a@x.com ",
                    "lastname": "Lee",
                    "phone": None,
                    "jobtitle": "CTO",
                    "notes": None,
                    "lastmodifieddate": "2026-02-01T00:00:00.000Z",
                },
            }
        )
        assert record.external_id == "7"
        assert record.email == "a@x.com"
        assert record.last_name == "Lee"
        assert record.phone is None
        assert record.properties == {"jobtitle": "CTO"}
        assert record.last_modified is not None

    def test_blank_values_become_none(self):
        record = from_crm_object({"id": "8", "properties": {"firstname": "   "}})
        assert record.first_name is None

    def test_unparseable_timestamp_is_ignored(self):
        record = from_crm_object({"id": "9", "properties": {"createdate": "yesterday"}})
        assert record.created_at is None


class TestToCrmProperties:
    def test_record_field_names_map_to_crm_names(self):
        assert to_crm_properties({"first_name": "Ann", "organization": "Acme"}) == {
            "firstname": "Ann",
            "company": "Acme",
        }

    def test_keys_are_lowercased(self):
        assert to_crm_properties({"JobTitle": "CTO"}) == {"jobtitle": "CTO"}

    def test_multiple_emails_split_into_additional(self):
        payload = to_crm_properties({"email": "a@x.com, b@x.com,c@x.com"})
        assert payload == {"email": "a@x.com", "hs_additional_emails": "b@x.com;c@x.com"}

    def test_none_clears_property(self):
        assert to_crm_properties({"phone": None, "email": None}) == {"phone": "", "email": ""}

    def test_split_emails_ignores_blanks(self):
        assert split_emails(" a@x.com ,, ") == ["a@x.com"]
        assert split_emails(None) == []
