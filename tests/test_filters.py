import pytest

from polystore.core.errors import ValidationError
from polystore.core.filters import (
    Eq,
    In,
    Range,
    is_missing,
    matches,
    matches_all,
    parse_filter,
    parse_filters,
    resolve_field,
)


class TestParseFilters:
    def test_scalar_becomes_eq(self) -> None:
        assert parse_filter("severity", "high") == Eq("severity", "high")

    def test_sequence_becomes_deduplicated_in(self) -> None:
        assert parse_filter("severity", ["high", "low", "high"]) == In(
            "severity", ("high", "low")
        )

    def test_min_max_mapping_becomes_range(self) -> None:
        assert parse_filter("score", {"min": 5, "max": 9}) == Range("score", 5, 9)
        assert parse_filter("score", {"min": 5}) == Range("score", 5, None)

    def test_other_mapping_is_equality(self) -> None:
        assert parse_filter("geo", {"lat": 1}) == Eq("geo", {"lat": 1})

    def test_range_requires_a_bound(self) -> None:
        with pytest.raises(ValidationError):
            Range("score")

    def test_range_bounds_must_share_a_type(self) -> None:
        with pytest.raises(ValidationError):
            Range("score", 1, "z")
        assert Range("name", "a", "m").max == "m"

    def test_parse_filters_accepts_expressions(self) -> None:
        exprs = (Eq("a", 1), In("b", (1, 2)))
        assert parse_filters(exprs) == exprs
        assert parse_filters(None) == ()

    def test_parse_filters_rejects_unknown_objects(self) -> None:
        with pytest.raises(ValidationError):
            parse_filters([("a", 1)])


class TestMatching:
    document = {
        "name": "beacon",
        "score": 7,
        "tags": ["apt", "phishing"],
        "geo": {"country": "NZ"},
        "flag": True,
    }

    def test_dotted_field_resolution(self) -> None:
        assert resolve_field(self.document, "geo.country") == "NZ"
        assert is_missing(resolve_field(self.document, "geo.city"))

    def test_eq_on_list_field_is_containment(self) -> None:
        assert matches(self.document, Eq("tags", "apt"))
        assert not matches(self.document, Eq("tags", "malware"))

    def test_in_on_list_field_is_intersection(self) -> None:
        assert matches(self.document, In("tags", ("malware", "phishing")))
        assert not matches(self.document, In("tags", ("malware",)))

    def test_range_bounds_are_inclusive(self) -> None:
        assert matches(self.document, Range("score", 7, 7))
        assert not matches(self.document, Range("score", max=6))

    def test_range_never_matches_booleans_or_mixed_types(self) -> None:
        assert not matches(self.document, Range("flag", min=0))
        assert not matches(self.document, Range("name", min=3))

    def test_missing_field_never_matches(self) -> None:
        assert not matches(self.document, Eq("absent", None))

    def test_matches_all_is_conjunction(self) -> None:
        assert matches_all(self.document, [])
        assert matches_all(self.document, [Eq("name", "beacon"), Range("score", min=5)])
        assert not matches_all(self.document, [Eq("name", "beacon"), Eq("score", 1)])
