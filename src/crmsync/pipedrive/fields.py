"""Custom-field discovery and option translation.

Pipedrive custom fields are addressed by opaque 40-character keys and enum
values by numeric option ids, both of which differ per account. This module
locates fields by fuzzy name matching and translates option ids back into
labels. The remote schema is fetched fresh on every discovery call.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

import structlog

from src.crmsync.pipedrive.client import PipedriveClient
from src.crmsync.pipedrive.errors import ApiResult
from src.crmsync.pipedrive.schemas import (
    RemoteCustomField,
    RemoteCustomFieldMapping,
    RemoteCustomFieldOption,
    RemoteOrganization,
)

logger = structlog.get_logger(__name__)


class EntityKind(str, Enum):
    PERSON = "person"
    ORGANIZATION = "organization"


# Ordered candidate name fragments per logical field; earlier fragments win.
PERSON_FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "still_active": ("still active", "active", "status"),
    "campaign": ("campaign",),
    "warmness": ("warmness", "warm score", "warmth"),
    "last_contacted": ("last contacted", "last contact"),
    "label": ("label",),
}

ORGANIZATION_FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "country": ("country",),
    "sector": ("sector", "industry"),
    "size": ("size", "employees", "headcount"),
}

_ACTIVE_LABELS = ("active", "still active", "yes", "true")
_INACTIVE_LABELS = ("inactive", "not active", "no", "false")


def find_field(
    fields: list[RemoteCustomField], fragments: tuple[str, ...]
) -> RemoteCustomField | None:
    """First field whose name contains a fragment, trying fragments in order."""
    for fragment in fragments:
        for field in fields:
            if fragment in field.name.lower():
                return field
    return None


def option_matches(option: RemoteCustomFieldOption, option_id: Any) -> bool:
    """True if option_id equals the option's id or its value read as an integer."""
    if option_id is None:
        return False
    wanted = str(option_id).strip()
    if str(option.id) == wanted:
        return True
    if option.value is None:
        return False
    try:
        return int(option.value) == int(wanted)
    except ValueError:
        return False


def translate_option_id(field: RemoteCustomField, option_id: Any) -> str | None:
    """Label for an enum option id, or None (with a warning) when nothing matches."""
    for option in field.options:
        if option_matches(option, option_id):
            return option.label
    logger.warning(
        "custom_fields.option_not_found",
        field_key=field.key,
        field_name=field.name,
        option_id=option_id,
    )
    return None


def _active_option(field: RemoteCustomField) -> RemoteCustomFieldOption | None:
    for option in field.options:
        if option.label.strip().lower() in _ACTIVE_LABELS:
            return option
    for option in field.options:
        label = option.label.lower()
        if "active" in label and "inactive" not in label and "not" not in label:
            return option
    return None


def _inactive_option(field: RemoteCustomField) -> RemoteCustomFieldOption | None:
    for option in field.options:
        if option.label.strip().lower() in _INACTIVE_LABELS:
            return option
    for option in field.options:
        label = option.label.lower()
        if "inactive" in label or "not" in label:
            return option
    return None


def _option_value(option: RemoteCustomFieldOption) -> str:
    return option.value if option.value is not None else str(option.id)


def build_field_mapping(fields: list[RemoteCustomField]) -> RemoteCustomFieldMapping:
    """Resolve logical person fields from a fetched schema; absent entries stay None."""
    mapping = RemoteCustomFieldMapping()

    still_active = find_field(fields, PERSON_FIELD_CANDIDATES["still_active"])
    if still_active is not None:
        mapping.still_active_field_key = still_active.key
        active = _active_option(still_active)
        if active is not None:
            mapping.active_value = _option_value(active)
        inactive = _inactive_option(still_active)
        if inactive is not None:
            mapping.inactive_value = _option_value(inactive)

    for logical, attr in (
        ("campaign", "campaign_field_key"),
        ("warmness", "warmness_field_key"),
        ("last_contacted", "last_contacted_field_key"),
        ("label", "label_field_key"),
    ):
        field = find_field(fields, PERSON_FIELD_CANDIDATES[logical])
        if field is not None:
            setattr(mapping, attr, field.key)

    return mapping


class CustomFieldTranslator:
    """Discovers remote field schemas and translates enum values.

    Args:
        client: PipedriveClient for the acting user.
    """

    def __init__(self, client: PipedriveClient) -> None:
        self._client = client

    async def discover_fields(self, entity_kind: EntityKind) -> ApiResult[list[RemoteCustomField]]:
        """Fetch the current field schema for persons or organizations."""
        if entity_kind == EntityKind.PERSON:
            result = await self._client.person_fields()
        else:
            result = await self._client.organization_fields()
        if result.ok:
            logger.debug(
                "custom_fields.discovered",
                entity_kind=entity_kind.value,
                count=len(result.data or []),
            )
        return result

    def translate_option_id(self, field: RemoteCustomField, option_id: Any) -> str | None:
        return translate_option_id(field, option_id)

    async def discover_field_mapping(self) -> RemoteCustomFieldMapping:
        """Resolve the still-active, campaign, warmness, last-contacted and label fields.

        A failed schema fetch yields an empty mapping; callers already treat
        every entry as optional.
        """
        result = await self.discover_fields(EntityKind.PERSON)
        if not result.ok:
            logger.warning("custom_fields.mapping_unavailable", error=result.error_message)
            return RemoteCustomFieldMapping()
        mapping = build_field_mapping(result.data or [])
        logger.info(
            "custom_fields.mapping_resolved",
            still_active=mapping.still_active_field_key is not None,
            campaign=mapping.campaign_field_key is not None,
            warmness=mapping.warmness_field_key is not None,
            last_contacted=mapping.last_contacted_field_key is not None,
            label=mapping.label_field_key is not None,
        )
        return mapping

    async def find_label_option(self, label_name: str) -> tuple[str, int | str] | None:
        """Locate the person label field and the option named label_name.

        Returns:
            (field_key, option_id) or None if either is absent.
        """
        result = await self.discover_fields(EntityKind.PERSON)
        if not result.ok:
            logger.warning("custom_fields.label_lookup_failed", error=result.error_message)
            return None
        field = find_field(result.data or [], PERSON_FIELD_CANDIDATES["label"])
        if field is None or not field.is_enum:
            logger.warning("custom_fields.label_field_missing")
            return None
        wanted = label_name.strip().lower()
        for option in field.options:
            if option.label.strip().lower() == wanted:
                return field.key, option.id
        logger.warning("custom_fields.label_option_missing", label=label_name, field_key=field.key)
        return None

    def translate_organization(
        self, organization: RemoteOrganization, fields: list[RemoteCustomField]
    ) -> dict[str, str | None]:
        """Read country, sector and size from an organization's custom values.

        Enum values are translated to labels; untranslatable values become None.
        """
        values: dict[str, str | None] = {}
        for logical, fragments in ORGANIZATION_FIELD_CANDIDATES.items():
            field = find_field(fields, fragments)
            raw = organization.custom_fields.get(field.key) if field else None
            if raw in (None, ""):
                values[logical] = None
            elif field.is_enum:
                values[logical] = translate_option_id(field, raw)
            else:
                values[logical] = str(raw)
        return values
