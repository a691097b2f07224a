"""Unit tests for sync.field_mapping — header aliases, row transforms, CRM translation."""
from sync.field_mapping import (
    build_row_transform,
    is_placeholder_email,
    map_dnc_status,
    map_lifecycle_stage,
    normalize_target,
    placeholder_email,
    resolve_targets,
    translate_hubspot_contact,
)


class TestResolveTargets:
    def test_aliases_are_case_and_spacing_insensitive(self):
        targets = resolve_targets(["First Name", "E-mail", "Company_Name", "Zip Code"])
        assert targets == ["first_name", "email", "company", "address.zip_code"]

    def test_unknown_headers_become_custom_fields(self):
        assert resolve_targets(["Favourite Colour"]) == ["custom.Favourite Colour"]

    def test_explicit_mapping_wins_over_aliases(self):
        targets = resolve_targets(["Email", "Notes"], {"Email": "skip", "Notes": "customFields.notes"})
        assert targets == ["", "custom.notes"]

    def test_camel_case_targets(self):
        assert normalize_target("firstName") == "first_name"
        assert normalize_target("address.zipCode") == "address.zip_code"
        assert normalize_target("jobTitle") == "job_title"
        assert normalize_target("industry") == "custom.industry"


class TestRowTransform:
    def test_maps_a_full_row(self):
        transform = build_row_transform(
            ["First Name", "Last Name", "Email", "Phone", "Tags", "City"], source="csv_fair"
        )
        data = transform(
            ["Jane", "Doe", " Jane@Example.com ", "555-1234, 555-9999", "vip, 2026", "Austin"],
            "batch:1",
        )
        assert data["first_name"] == "Jane"
        assert data["email"] == "jane@example.com"
        assert data["email_is_placeholder"] is False
        assert data["phone"] == "555-1234"
        assert data["tags"] == ["vip", "2026"]
        assert data["address"] == {"city": "Austin"}
        assert data["source"] == "csv_fair"
        assert data["source_id"] == "batch:1"

    def test_row_without_identity_is_dropped(self):
        transform = build_row_transform(["Phone", "City"], source="csv_fair")
        assert transform(["555-1234", "Austin"], "batch:1") is None

    def test_company_only_row_gets_placeholder_email(self):
        transform = build_row_transform(["Company"], source="csv_fair")
        data = transform(["Acme"], "batch:7")
        assert data["email_is_placeholder"] is True
        assert data["email"] == placeholder_email("csv_fair", "batch:7")
        assert is_placeholder_email(data["email"])

    def test_invalid_email_kept_in_custom_fields(self):
        transform = build_row_transform(["Name", "Email", "Company"], {"Name": "firstName"}, source="csv_x")
        data = transform(["Sam", "not-an-email", "Acme"], "b:1")
        assert data["custom_fields"]["invalidEmail"] == "not-an-email"
        assert data["email_is_placeholder"] is True

    def test_unknown_lifecycle_stage_is_not_applied(self):
        transform = build_row_transform(["Email", "Stage"], source="csv_x")
        data = transform(["a@b.co", "qualified-ish"], "b:1")
        assert "lifecycle_stage" not in data
        assert data["custom_fields"]["lifecycleStage"] == "qualified-ish"

    def test_short_rows_are_tolerated(self):
        transform = build_row_transform(["Email", "Company", "City"], source="csv_x")
        data = transform(["a@b.co"], "b:1")
        assert data["email"] == "a@b.co"
        assert data["address"] == {}


class TestPlaceholderEmail:
    def test_deterministic_and_distinct(self):
        assert placeholder_email("hubspot", "1") == placeholder_email("hubspot", "1")
        assert placeholder_email("hubspot", "1") != placeholder_email("hubspot", "2")
        assert placeholder_email("hubspot", "1").startswith("noemail_")

    def test_real_address_is_not_placeholder(self):
        assert not is_placeholder_email("jane@example.com")
        assert not is_placeholder_email(None)


class TestHubSpotTranslation:
    def test_translates_properties(self):
        data = translate_hubspot_contact({
            "id": "501",
            "properties": {
                "firstname": "Ana",
                "email": "ana@acme.com",
                "company": "Acme",
                "industry": "Events",
                "lifecyclestage": "marketingqualifiedlead",
                "zip": "73301",
            },
        })
        assert data["source"] == "hubspot"
        assert data["source_id"] == "501"
        assert data["lifecycle_stage"] == "prospect"
        assert data["dnc_status"] == "callable"
        assert data["address"]["zip_code"] == "73301"
        assert data["custom_fields"]["industry"] == "Events"
        assert data["custom_fields"]["hubspotId"] == "501"
        assert "lifecyclestage" not in data["custom_fields"]

    def test_record_without_identity_is_skipped(self):
        assert translate_hubspot_contact({"id": "9", "properties": {"phone": "555"}}) is None

    def test_dnc_flags(self):
        assert map_dnc_status({"hs_do_not_call": "true"})["dnc_status"] == "dnc_internal"
        assert map_dnc_status({"hs_marketable_status": "NOT_OPTED_IN"})["dnc_status"] == "dnc_internal"
        federal = map_dnc_status({"federal_dnc": True})
        assert federal["dnc_status"] == "dnc_federal"
        assert federal["dnc_reason"] == "Federal DNC Registry"
        assert map_dnc_status({})["dnc_status"] == "callable"

    def test_unknown_lifecycle_defaults_to_lead(self):
        assert map_lifecycle_stage("other") == "lead"
        assert map_lifecycle_stage(None) == "lead"
