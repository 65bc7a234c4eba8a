"""Unit tests for rule matching and ordering."""

from datetime import datetime, timedelta, timezone

from conftest import make_listing, make_rule

from dealcast.services.matcher import match_rules, rule_applies


def test_rule_without_predicates_matches_everything() -> None:
    rule = make_rule()
    for listing in [
        make_listing(),
        make_listing(category_id=None, rating=None, review_count=None),
        make_listing(current_price=0.0, original_price=None),
    ]:
        assert rule_applies(rule, listing, score=0)


def test_price_bounds_exclude_listing() -> None:
    listing = make_listing(current_price=100.0)
    assert match_rules(listing, 80, [make_rule(max_price=99.99)]) == []
    assert match_rules(listing, 80, [make_rule(min_price=100.01)]) == []
    assert len(match_rules(listing, 80, [make_rule(min_price=50, max_price=100)])) == 1


def test_category_score_rating_and_reviews_predicates() -> None:
    listing = make_listing(category_id=123, rating=4.1, review_count=40)
    assert rule_applies(make_rule(category_ids=(123, 456)), listing, 50)
    assert not rule_applies(make_rule(category_ids=(456,)), listing, 50)
    assert not rule_applies(make_rule(min_score=60), listing, 59)
    assert rule_applies(make_rule(min_score=60), listing, 60)
    assert not rule_applies(make_rule(min_rating=4.5), listing, 90)
    assert not rule_applies(make_rule(min_reviews=41), listing, 90)


def test_unknown_rating_fails_a_rating_minimum() -> None:
    listing = make_listing(rating=None, review_count=None)
    assert not rule_applies(make_rule(min_rating=1.0), listing, 90)
    assert not rule_applies(make_rule(min_reviews=1), listing, 90)


def test_rules_ordered_by_priority() -> None:
    low = make_rule(id=10, priority=2)
    high = make_rule(id=20, priority=1)
    matched = match_rules(make_listing(), 80, [low, high])
    assert [r.id for r in matched] == [20, 10]


def test_creation_order_breaks_ties_and_unprioritized_go_last() -> None:
    t0 = datetime(2026, 3, 1, tzinfo=timezone.utc)
    first = make_rule(id=3, created_at=t0)
    second = make_rule(id=1, created_at=t0 + timedelta(hours=1))
    prioritized = make_rule(id=2, priority=5, created_at=t0 + timedelta(days=1))
    matched = match_rules(make_listing(), 80, [second, prioritized, first])
    assert [r.id for r in matched] == [2, 3, 1]


def test_all_applicable_rules_are_returned() -> None:
    rules = [make_rule(id=i, priority=i) for i in range(1, 4)] + [make_rule(id=9, min_score=99)]
    matched = match_rules(make_listing(), 80, rules)
    assert [r.id for r in matched] == [1, 2, 3]
