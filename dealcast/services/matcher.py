"""Rule matching.

A rule applies to a listing when every predicate passes. Each predicate is an
independent function that treats an unset rule field as "always satisfied", so
adding a new filter means appending to RULE_PREDICATES.
"""

from collections.abc import Callable, Iterable

from dealcast.domain import AutomationRule, Listing

Predicate = Callable[[AutomationRule, Listing, int], bool]


def category_allowed(rule: AutomationRule, listing: Listing, score: int) -> bool:
    if not rule.category_ids:
        return True
    return listing.category_id is not None and listing.category_id in rule.category_ids


def price_within_bounds(rule: AutomationRule, listing: Listing, score: int) -> bool:
    if rule.min_price is not None and listing.current_price < rule.min_price:
        return False
    if rule.max_price is not None and listing.current_price > rule.max_price:
        return False
    return True


def score_at_least(rule: AutomationRule, listing: Listing, score: int) -> bool:
    return rule.min_score is None or score >= rule.min_score


def rating_at_least(rule: AutomationRule, listing: Listing, score: int) -> bool:
    if rule.min_rating is None:
        return True
    return listing.rating is not None and listing.rating >= rule.min_rating


def reviews_at_least(rule: AutomationRule, listing: Listing, score: int) -> bool:
    if rule.min_reviews is None:
        return True
    return listing.review_count is not None and listing.review_count >= rule.min_reviews


RULE_PREDICATES: tuple[Predicate, ...] = (
    category_allowed,
    price_within_bounds,
    score_at_least,
    rating_at_least,
    reviews_at_least,
)


def rule_applies(
    rule: AutomationRule,
    listing: Listing,
    score: int,
    predicates: Iterable[Predicate] = RULE_PREDICATES,
) -> bool:
    return all(predicate(rule, listing, score) for predicate in predicates)


def rule_order_key(rule: AutomationRule) -> tuple:
    """Explicit priority first (unset last), then creation order, then id."""
    created = rule.created_at.timestamp() if rule.created_at is not None else float("inf")
    return (
        rule.priority is None,
        rule.priority if rule.priority is not None else 0,
        created,
        rule.id,
    )


def match_rules(
    listing: Listing,
    score: int,
    rules: Iterable[AutomationRule],
    predicates: Iterable[Predicate] = RULE_PREDICATES,
) -> list[AutomationRule]:
    """Return every applicable rule, ordered by priority.

    Args:
        listing: Scored listing.
        score: Its deal score.
        rules: Active rules (inactive ones are filtered at load time).
        predicates: Predicate list; defaults to RULE_PREDICATES.

    Returns:
        Applicable rules; empty when none match.
    """
    predicates = tuple(predicates)
    applicable = [r for r in rules if rule_applies(r, listing, score, predicates)]
    return sorted(applicable, key=rule_order_key)
