# tests/test_attribution.py
from __future__ import annotations

import pytest

from app.core.attribution import (
    NO_ATTRIBUTION,
    attribute_from_calendar,
    attribute_from_fields,
    attribute_from_hyros,
    attribute_from_tags,
)
from app.models.calendar import Calendar
from app.models.hyros_attribution import HyrosAttribution


def test_manual_calendar_source_beats_name_pattern():
    calendar = Calendar(name="Strategy Call (META)", traffic_source="YouTube")
    result = attribute_from_calendar(calendar)
    assert result.traffic_source == "YouTube"
    assert result.confidence == 1.0
    assert result.lead_source == "calendar"


@pytest.mark.parametrize(
    "name,expected",
    [
        ("Strategy Call (META)", "META"),
        ("Strategy Call [GOOGLE]", "GOOGLE"),
        ("Strategy Call - YT", "YT"),
        ("Sales_ORGANIC", "ORGANIC"),
    ],
)
def test_calendar_name_patterns(name, expected):
    result = attribute_from_calendar(Calendar(name=name, traffic_source=None))
    assert result.traffic_source == expected
    assert result.confidence == 0.8


def test_calendar_without_source_is_zero_confidence():
    assert attribute_from_calendar(Calendar(name="Discovery call", traffic_source=None)) == NO_ATTRIBUTION
    assert attribute_from_calendar(None) == NO_ATTRIBUTION


def test_configured_field_path_wins_over_common_names():
    fields = {"source": "Common", "marketing": {"channel": "Configured"}}
    result = attribute_from_fields(fields, "contact.marketing.channel")
    assert (result.traffic_source, result.confidence) == ("Configured", 1.0)

    result = attribute_from_fields(fields, "contact.marketing.missing")
    assert (result.traffic_source, result.confidence) == ("Common", 0.8)


def test_fields_without_source_give_no_attribution():
    assert attribute_from_fields({}, None) == NO_ATTRIBUTION
    assert attribute_from_fields({"utm_source": "  "}, None) == NO_ATTRIBUTION


def test_hyros_uses_last_touch():
    record = HyrosAttribution(first_source="Google", last_source="Meta")
    assert attribute_from_hyros(record).traffic_source == "Meta"
    assert attribute_from_hyros(HyrosAttribution(first_source="Google", last_source=None)) == NO_ATTRIBUTION
    assert attribute_from_hyros(None) == NO_ATTRIBUTION


@pytest.mark.parametrize(
    "tags,expected",
    [
        (["vip", "source:Podcast"], "Podcast"),
        (["traffic-Webinar"], "Webinar"),
        (["hot lead", "facebook"], "facebook"),
    ],
)
def test_tag_patterns(tags, expected):
    result = attribute_from_tags(tags)
    assert result.traffic_source == expected
    assert result.lead_source == "tag"


def test_unrecognized_tags_give_no_attribution():
    assert attribute_from_tags(["vip", "warm"]) == NO_ATTRIBUTION
    assert attribute_from_tags(None) == NO_ATTRIBUTION
