"""Tests for custom-field discovery, option translation and payload sanitization."""

from __future__ import annotations

from src.crmsync.config import PipedriveLimits
from src.crmsync.pipedrive.errors import ApiError, ApiErrorKind, ApiResult
from src.crmsync.pipedrive.fields import (
    CustomFieldTranslator,
    EntityKind,
    build_field_mapping,
    find_field,
    translate_option_id,
)
from src.crmsync.pipedrive.sanitize import Sanitizer, sanitize_text
from src.crmsync.pipedrive.schemas import (
    RemoteCustomField,
    RemoteCustomFieldOption,
    RemoteOrganization,
)


def _field(key: str, name: str, field_type: str = "varchar", options=()) -> RemoteCustomField:
    return RemoteCustomField(
        id=hash(key) % 1000,
        key=key,
        name=name,
        field_type=field_type,
        options=[RemoteCustomFieldOption(**o) for o in options],
    )


STILL_ACTIVE = _field(
    "k_active",
    "Still Active",
    "enum",
    [{"id": 31, "label": "Active"}, {"id": 32, "label": "Inactive"}],
)
LABEL = _field(
    "label",
    "Label",
    "enum",
    [{"id": 5, "label": "Cold lead"}, {"id": 6, "label": "Warm lead"}],
)
PERSON_FIELDS = [
    _field("name", "Name"),
    STILL_ACTIVE,
    _field("k_campaign", "Campaign Code"),
    _field("k_warm", "Warmness Score", "double"),
    _field("k_last", "Last Contacted", "date"),
    LABEL,
]


class TestFindField:
    def test_earlier_fragment_wins(self):
        fields = [_field("x", "Status"), _field("y", "Still Active")]
        assert find_field(fields, ("still active", "status")).key == "y"

    def test_case_insensitive(self):
        assert find_field(PERSON_FIELDS, ("warmness",)).key == "k_warm"

    def test_missing(self):
        assert find_field(PERSON_FIELDS, ("nonexistent",)) is None


class TestTranslateOption:
    def test_matches_id(self):
        assert translate_option_id(STILL_ACTIVE, 31) == "Active"

    def test_matches_string_id(self):
        assert translate_option_id(STILL_ACTIVE, "32") == "Inactive"

    def test_matches_numeric_value(self):
        field = _field("c", "Country", "enum", [{"id": "uk", "label": "UK", "value": "44"}])
        assert translate_option_id(field, 44) == "UK"

    def test_unknown_option_returns_none(self):
        assert translate_option_id(STILL_ACTIVE, 99) is None


class TestBuildFieldMapping:
    def test_resolves_every_logical_field(self):
        mapping = build_field_mapping(PERSON_FIELDS)

        assert mapping.still_active_field_key == "k_active"
        assert mapping.active_value == "31"
        assert mapping.inactive_value == "32"
        assert mapping.campaign_field_key == "k_campaign"
        assert mapping.warmness_field_key == "k_warm"
        assert mapping.last_contacted_field_key == "k_last"
        assert mapping.label_field_key == "label"

    def test_absent_fields_stay_none(self):
        mapping = build_field_mapping([_field("name", "Name")])
        assert mapping.still_active_field_key is None
        assert mapping.active_value is None
        assert mapping.campaign_field_key is None

    def test_yes_no_options(self):
        field = _field(
            "k", "Still Active", "enum", [{"id": 1, "label": "No"}, {"id": 2, "label": "Yes"}]
        )
        mapping = build_field_mapping([field])
        assert mapping.active_value == "2"
        assert mapping.inactive_value == "1"


class TestCustomFieldTranslator:
    async def test_discovers_person_fields(self, pipedrive_client):
        pipedrive_client.person_fields.return_value = ApiResult.success(PERSON_FIELDS)
        translator = CustomFieldTranslator(pipedrive_client)

        result = await translator.discover_fields(EntityKind.PERSON)

        assert result.ok
        pipedrive_client.person_fields.assert_awaited_once()
        pipedrive_client.organization_fields.assert_not_awaited()

    async def test_mapping_empty_when_schema_unavailable(self, pipedrive_client):
        pipedrive_client.person_fields.return_value = ApiResult.failure(
            ApiError(ApiErrorKind.NETWORK_ERROR, "down")
        )
        mapping = await CustomFieldTranslator(pipedrive_client).discover_field_mapping()
        assert mapping.still_active_field_key is None

    async def test_find_label_option(self, pipedrive_client):
        pipedrive_client.person_fields.return_value = ApiResult.success(PERSON_FIELDS)
        found = await CustomFieldTranslator(pipedrive_client).find_label_option("warm LEAD")
        assert found == ("label", 6)

    async def test_find_label_option_missing(self, pipedrive_client):
        pipedrive_client.person_fields.return_value = ApiResult.success(PERSON_FIELDS)
        found = await CustomFieldTranslator(pipedrive_client).find_label_option("Hot lead")
        assert found is None

    def test_translate_organization(self, pipedrive_client):
        fields = [
            _field("k_country", "Country", "enum", [{"id": 7, "label": "Germany"}]),
            _field("k_industry", "Industry"),
            _field("k_size", "Company Size", "enum", [{"id": 1, "label": "1-10"}]),
        ]
        organization = RemoteOrganization(
            id=1,
            name="Acme",
            custom_fields={"k_country": 7, "k_industry": "Retail", "k_size": 99},
        )
        values = CustomFieldTranslator(pipedrive_client).translate_organization(organization, fields)
        assert values == {"country": "Germany", "sector": "Retail", "size": None}


class TestSanitizer:
    def test_strips_markup_and_truncates(self):
        assert sanitize_text("<b>Hi</b><script>alert(1)</script> there ", 5) == "Hi th"

    def test_none_passes_through(self):
        assert sanitize_text(None, 10) is None

    def test_person_contact_entries(self):
        sanitizer = Sanitizer(PipedriveLimits(phone=4))
        payload = sanitizer.person(
            {"name": "<i>Ann</i>", "phone": [{"value": "123456", "primary": True}]}
        )
        assert payload["name"] == "Ann"
        assert payload["phone"] == [{"value": "1234", "primary": True}]

    def test_disabled_is_identity(self):
        payload = {"subject": "<b>x</b>"}
        assert Sanitizer(PipedriveLimits(), enabled=False).activity(payload) is payload
