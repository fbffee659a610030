"""
Tests for rule-based lead field extraction.
"""

from datetime import date

import pytest

from src.intake.extract import (
    ACCUMULATING_FIELDS,
    EXTRACTORS,
    extract,
    extract_date,
    extract_injuries,
    extract_location,
    extract_name,
    extract_phone,
    extract_police_report,
    extract_truck_type,
    merge_injuries,
)
from src.intake.lead_types import LEAD_FIELDS

TODAY = date(2025, 11, 23)


class TestName:

    @pytest.mark.parametrize("text,expected", [
        ("My name is John Smith", "John Smith"),
        ("my name's jane doe", "Jane Doe"),
        ("Hi, this is Maria", "Maria"),
        ("I'm John and I was hit", "John"),
        ("You can call me Bob", "Bob"),
    ])
    def test_introductions(self, text, expected):
        assert extract_name(text) == expected

    @pytest.mark.parametrize("text", [
        "I'm hurt",
        "This is terrible",
        "I am not sure",
        "It was a semi truck",
        "I'm done",
        "I am currently in the hospital",
        "This is really scary",
    ])
    def test_non_names_rejected(self, text):
        assert extract_name(text) is None

    def test_name_question_relaxes_guarded_forms(self):
        assert extract_name("I'm Emily") is None
        assert extract_name("I'm Emily", hint="Can I get your name?") == "Emily"

    def test_dispatch_passes_hint(self):
        assert extract("name", "this is Kelly", hint="What is your name?") == "Kelly"


class TestPhone:

    def test_formats_number(self):
        assert extract_phone("my number is (214) 555-0199") == "214-555-0199"

    def test_country_code(self):
        assert extract_phone("+1 214 555 0199") == "214-555-0199"

    def test_short_digit_runs_ignored(self):
        assert extract_phone("it happened 3 days ago") is None


class TestDate:

    @pytest.mark.parametrize("text,expected", [
        ("It happened 3 days ago", "2025-11-20"),
        ("about two weeks ago", "2025-11-09"),
        ("It was last week", "2025-11-16"),
        ("last month", "2025-10-23"),
        ("the accident was yesterday", "2025-11-22"),
        ("it happened the day before yesterday", "2025-11-21"),
        ("the crash was today", "2025-11-23"),
        ("March 5th", "2025-03-05"),
        ("on the 5th of March", "2025-03-05"),
        ("June 3, 2024", "2024-06-03"),
        ("15/10/2025", "2025-10-15"),
        ("15/10/25", "2025-10-15"),
    ])
    def test_resolves(self, text, expected):
        assert extract_date(text, TODAY) == expected

    def test_sometime_recently_is_unresolved(self):
        assert extract_date("sometime recently", TODAY) is None

    def test_yesterday_needs_accident_context(self):
        assert extract_date("I saw the doctor yesterday", TODAY) is None
        assert extract_date("yesterday", TODAY, hint="When did the accident happen?") == "2025-11-22"

    def test_yearless_future_date_rolls_back(self):
        assert extract_date("December 25", TODAY) == "2024-12-25"

    def test_future_date_with_year_rejected(self):
        assert extract_date("June 3, 2026", TODAY) is None

    def test_impossible_date_rejected(self):
        assert extract_date("31/02/2025", TODAY) is None

    def test_last_month_clamps_day(self):
        assert extract_date("last month", date(2025, 3, 31)) == "2025-02-28"


class TestLocation:

    @pytest.mark.parametrize("text,expected", [
        ("On Mitchell Drive in Dallas", "Mitchell Drive in Dallas"),
        ("Dallas, Texas", "Dallas, Texas"),
        ("It was near the Walmart parking lot", "the Walmart parking lot"),
        ("It was on Highway 75", "Highway 75"),
        ("Highway 75 by the exit", "Highway 75"),
        ("coming off Elm Street downtown", "Elm Street"),
    ])
    def test_finds_location(self, text, expected):
        assert extract_location(text) == expected

    @pytest.mark.parametrize("text", [
        "at 5 pm",
        "on Monday",
        "I don't remember",
    ])
    def test_rejects_non_places(self, text):
        assert extract_location(text) is None


class TestTruckType:

    @pytest.mark.parametrize("text,expected", [
        ("it was an 18-wheeler", "18 Wheeler"),
        ("semi truck hit me", "Semi Truck"),
        ("a big rig", "Big Rig"),
        ("some kind of dump truck", "Dump Truck"),
        ("an Amazon van", "Delivery Truck"),
        ("just a semi", "Semi"),
    ])
    def test_labels(self, text, expected):
        assert extract_truck_type(text) == expected

    def test_no_truck(self):
        assert extract_truck_type("a blue sedan") is None


class TestInjuries:

    def test_single_term(self):
        assert extract_injuries("My back hurts") == "Back"

    def test_multiple_terms_in_spoken_order(self):
        assert extract_injuries("My neck and shoulder are sore") == "Neck, Shoulder"

    def test_longer_term_wins(self):
        assert extract_injuries("I have back pain") == "Back Pain"

    def test_needs_injury_keyword(self):
        assert extract_injuries("my back is fine") is None

    def test_merge_appends_unseen_terms(self):
        assert merge_injuries("Back", "Back, Knee") == "Back, Knee"

    def test_merge_skips_contained_terms(self):
        assert merge_injuries("Back Pain", "Back") == "Back Pain"

    def test_merge_from_empty(self):
        assert merge_injuries(None, "Neck") == "Neck"
        assert merge_injuries("Neck", None) == "Neck"


class TestPoliceReport:

    @pytest.mark.parametrize("text,expected", [
        ("no, they never came", "No"),
        ("yes the officer filed a report", "Yes"),
        ("No report was filed", "No"),
        ("the police came and took a report", "Yes"),
        ("No, they did not file a report", "No"),
        ("they never filed a police report", "No"),
        ("yes they did file a report", "Yes"),
    ])
    def test_classifies(self, text, expected):
        assert extract_police_report(text) == expected

    def test_yes_wins_when_both_present(self):
        assert extract_police_report("yes, but no ticket", hint="Was a police report filed?") == "Yes"

    def test_negated_answer_to_police_question(self):
        assert extract_police_report("No, they did not", hint="Was a police report filed?") == "No"
        assert extract_police_report("they did", hint="Was a police report filed?") == "Yes"

    def test_needs_police_context(self):
        assert extract_police_report("no") is None
        assert extract_police_report("no", hint="Did the police come out?") == "No"


class TestDispatch:

    def test_registry_covers_every_field(self):
        assert set(EXTRACTORS) == set(LEAD_FIELDS)
        assert ACCUMULATING_FIELDS == {"injuriesSustained"}

    def test_empty_input_yields_nothing(self):
        for field_name in LEAD_FIELDS:
            assert extract(field_name, "   ", today=TODAY) is None

    def test_unknown_field_raises(self):
        with pytest.raises(KeyError):
            extract("favoriteColor", "blue")

    def test_idempotent(self):
        text = "It was a semi truck"
        assert extract("typeOfTruck", text) == extract("typeOfTruck", text)
