"""Tests for outbound payload builders and activity subjects."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.crmsync.config import PipedriveLimits
from src.crmsync.crm.schemas import (
    ActivityContext,
    ActivityRead,
    ActivityType,
    CampaignRead,
    ContactRead,
    UserRead,
)
from src.crmsync.pipedrive.sanitize import Sanitizer
from src.crmsync.sync.payloads import (
    UNKNOWN_CONTACT_NAME,
    activity_payload,
    activity_subject,
    campaign_prefix,
    person_payload,
)

SANITIZER = Sanitizer(PipedriveLimits())


def _context(
    *,
    type: ActivityType = ActivityType.EMAIL,
    subject: str | None = None,
    campaign: CampaignRead | None = None,
    due_date: datetime | None = None,
    user_name: str | None = "Test User",
) -> ActivityContext:
    return ActivityContext(
        activity=ActivityRead(
            id="a1",
            type=type,
            subject=subject,
            contact_id="c1",
            user_id="u1",
            due_date=due_date,
        ),
        contact=ContactRead(id="c1", name="John Doe"),
        user=UserRead(id="u1", email="test@example.com", name=user_name),
        campaign=campaign,
    )


ASC = CampaignRead(id="k1", name="Adult Social Care", shortcode="asc")


class TestPersonPayload:
    def test_blank_name_falls_back(self):
        payload = person_payload(ContactRead(id="c", name="  "), SANITIZER)
        assert payload == {"name": UNKNOWN_CONTACT_NAME}

    def test_builtin_label_uses_label_ids(self):
        payload = person_payload(ContactRead(id="c", name="A"), SANITIZER, label=("label", "6"))
        assert payload["label_ids"] == [6]

    def test_custom_label_field_uses_its_key(self):
        payload = person_payload(ContactRead(id="c", name="A"), SANITIZER, label=("k_lbl", 9))
        assert payload["k_lbl"] == 9
        assert "label_ids" not in payload

    def test_unresolved_relations_are_omitted(self):
        payload = person_payload(ContactRead(id="c", name="A"), SANITIZER, org_id="not-a-number")
        assert "org_id" not in payload
        assert "owner_id" not in payload


class TestActivitySubject:
    def test_default_subject(self):
        assert activity_subject(_context()) == "Email Communication - John Doe by Test User"

    def test_default_subject_with_campaign_is_prefixed(self):
        subject = activity_subject(_context(campaign=ASC))
        assert subject == (
            "[CMPGN-ASC] Email Communication - John Doe by Test User (Adult Social Care)"
        )

    def test_user_email_when_name_missing(self):
        assert activity_subject(_context(user_name=None)).endswith("by test@example.com")

    def test_explicit_subject_is_prefixed_once(self):
        assert activity_subject(_context(subject="Intro call", campaign=ASC)) == (
            "[CMPGN-ASC] Intro call"
        )
        assert activity_subject(_context(subject="[CMPGN-ASC] Intro call", campaign=ASC)) == (
            "[CMPGN-ASC] Intro call"
        )

    def test_campaign_without_shortcode_has_no_prefix(self):
        assert campaign_prefix(CampaignRead(id="k", name="No code")) is None


class TestActivityPayload:
    def test_meeting_request_maps_to_lunch(self):
        payload = activity_payload(
            _context(type=ActivityType.MEETING_REQUEST), SANITIZER, person_id="42"
        )
        assert payload["type"] == "lunch"
        assert payload["person_id"] == 42
        assert payload["done"] == 0

    def test_due_date_is_sent_in_utc(self):
        due = datetime(2025, 1, 10, 23, 30, tzinfo=timezone(timedelta(hours=-2)))
        payload = activity_payload(_context(due_date=due), SANITIZER, person_id=1)
        assert payload["due_date"] == "2025-01-11"
        assert payload["due_time"] == "01:30"

    def test_owner_and_org(self):
        payload = activity_payload(_context(), SANITIZER, person_id=1, org_id="5", owner_id=3)
        assert payload["org_id"] == 5
        assert payload["user_id"] == 3
