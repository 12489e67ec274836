import itertools
import logging

import pytest

from counsellor.core.records import CATEGORY_NAMES, MatchKind
from counsellor.engines.data_engine import DataEngine, credentials_match, match_student

ROSTER = [
    {"studentId": "41", "firstname": "John", "lastname": "Roe"},
    {"studentId": "42", "firstname": "Jane", "lastname": "Doe"},
    {"studentId": "43", "firstname": "Amir", "lastname": "Khan"},
]


class TestMatchStudent:
    def test_single_document_is_used_directly(self):
        result = match_student({"id": "99"}, "42", "Jane Doe")
        assert result.kind is MatchKind.MATCHED
        assert result.record == {"id": "99"}

    @pytest.mark.parametrize("payload", [None, [], {}, [None]])
    def test_empty_payload_is_not_found(self, payload):
        result = match_student(payload, "42", "Jane Doe")
        assert result.kind is MatchKind.NOT_FOUND
        assert result.record is None

    def test_id_and_name_match(self):
        result = match_student(ROSTER, "42", "jane DOE")
        assert result.kind is MatchKind.MATCHED
        assert result.record["studentId"] == "42"

    def test_id_match_without_name(self):
        result = match_student(ROSTER, "43")
        assert result.kind is MatchKind.MATCHED
        assert result.record["firstname"] == "Amir"

    def test_id_match_with_wrong_name_falls_back_to_id(self):
        result = match_student(ROSTER, "42", "Someone Else")
        assert result.kind is MatchKind.FALLBACK
        assert result.record["studentId"] == "42"

    def test_name_match_outside_id_set_is_fallback(self):
        result = match_student(ROSTER, "77", "Amir Khan")
        assert result.kind is MatchKind.FALLBACK
        assert result.record["studentId"] == "43"

    def test_no_match_falls_back_to_first_element(self):
        result = match_student(ROSTER, "77", "Nobody Here")
        assert result.kind is MatchKind.FALLBACK
        assert result.record is ROSTER[0]
        assert not result.confident

    def test_row_key_does_not_hide_the_student_reference(self):
        roster = [
            {"id": 1, "student_id": "41", "class": "Law"},
            {"id": 2, "student_id": "42", "class": "Computing"},
        ]
        result = match_student(roster, "42")
        assert result.kind is MatchKind.MATCHED
        assert result.record["class"] == "Computing"

    def test_row_key_equal_to_the_student_id_is_not_an_identity(self):
        roster = [{"id": 42, "student_id": "7"}, {"id": 3, "student_id": "42"}]
        result = match_student(roster, "42")
        assert result.kind is MatchKind.MATCHED
        assert result.record == {"id": 3, "student_id": "42"}


class TestCredentialsMatch:
    def test_matching_profile(self):
        assert credentials_match({"id": "42", "firstname": "Jane", "lastname": "Doe"}, "42", "Jane Doe")

    def test_full_name_field(self):
        assert credentials_match({"studentId": "42", "name": "Jane Doe"}, "42", "jane doe")

    def test_wrong_id(self):
        assert not credentials_match({"id": "41", "firstname": "Jane", "lastname": "Doe"}, "42", "Jane Doe")

    def test_student_reference_decides_over_row_id(self):
        assert credentials_match({"id": 9, "student_id": "42", "name": "Jane Doe"}, "42", "Jane Doe")
        assert not credentials_match({"id": 9, "student_id": "41", "name": "Jane Doe"}, "42", "Jane Doe")

    def test_wrong_name(self):
        assert not credentials_match({"id": "42", "firstname": "John", "lastname": "Doe"}, "42", "Jane Doe")

    def test_missing_profile(self):
        assert not credentials_match(None, "42", "Jane Doe")


FAILURE_SUBSETS = [
    subset
    for size in range(len(CATEGORY_NAMES) + 1)
    for subset in itertools.combinations(CATEGORY_NAMES, size)
]


@pytest.mark.asyncio
@pytest.mark.parametrize("failed", FAILURE_SUBSETS, ids=lambda s: "+".join(s) or "none")
async def test_aggregate_survives_any_failure_subset(make_provider, failed):
    provider = make_provider()
    payloads = provider.serve_student()
    for category in failed:
        provider.fail_path(provider.paths[category])

    engine = DataEngine(provider.gateway())
    record = await engine.aggregate("42", "Jane Doe")

    expected = dict(payloads)
    expected["enrollment"] = payloads["enrollment"][1]
    for category in CATEGORY_NAMES:
        if category in failed:
            assert record.category(category) is None
        else:
            assert record.category(category) == expected[category]
    assert record.student_id == "42"
    assert len(provider.requests) == len(CATEGORY_NAMES)


@pytest.mark.asyncio
async def test_aggregate_records_match_kinds(make_provider, caplog):
    provider = make_provider()
    provider.serve_student()
    provider.routes[provider.paths["enrollment"]] = [{"studentId": "41", "name": "John Roe"}]

    with caplog.at_level(logging.INFO, logger="Counsellor_AI"):
        record = await DataEngine(provider.gateway()).aggregate("42", "Jane Doe")

    assert record.matches["profile"] is MatchKind.MATCHED
    assert record.matches["enrollment"] is MatchKind.FALLBACK
    assert record.enrollment == {"studentId": "41", "name": "John Roe"}
    assert any(
        r.name == "Counsellor_AI.data" and "enrollment resolved by fallback" in r.getMessage() for r in caplog.records
    )


@pytest.mark.asyncio
async def test_resolve_token(make_provider):
    provider = make_provider({"/verify-token/abc/": {"id": "42", "name": "Jane Doe", "role": "student"}})
    engine = DataEngine(provider.gateway())

    assert await engine.resolve_token("abc") == {"id": "42", "name": "Jane Doe", "role": "student"}
    assert await engine.resolve_token("unknown") is None


def test_missing_endpoint_is_rejected(provider):
    with pytest.raises(ValueError):
        DataEngine(provider.gateway(), endpoints={"profile": "{base}/students/{student_id}"})


@pytest.mark.asyncio
async def test_enrollment_rows_with_their_own_ids_resolve_to_the_student(make_provider):
    provider = make_provider()
    provider.serve_student()
    provider.routes[provider.paths["enrollment"]] = [
        {"id": 1, "student_id": "41", "class": "Law"},
        {"id": 2, "student_id": "42", "class": "Computing"},
    ]

    record = await DataEngine(provider.gateway()).aggregate("42", "Jane Doe")

    assert record.matches["enrollment"] is MatchKind.MATCHED
    assert record.enrollment == {"id": 2, "student_id": "42", "class": "Computing"}
