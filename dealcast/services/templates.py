"""Message template rendering.

Rule templates use Jinja2 `{{placeholder}}` syntax, rendered in a sandbox.
Unknown placeholders render as empty strings; a template that fails to parse or
render is logged and replaced by DEFAULT_TEMPLATE so publishing never blocks on
an authoring mistake.

Placeholders: title, price, original_price, discount, link, category, rating,
review_count, rating_line, external_id.
"""

import logging
from typing import Any

import httpx
from jinja2 import ChainableUndefined
from jinja2.sandbox import SandboxedEnvironment

from dealcast.domain import Listing
from dealcast.settings import get_settings

logger = logging.getLogger("uvicorn.error")

DEFAULT_TEMPLATE = (
    "🔥 {{title}}\n"
    "\n"
    "💰 €{{price}}{% if original_price %} (was €{{original_price}}, -{{discount}}%){% endif %}\n"
    "{% if rating_line %}{{rating_line}}\n{% endif %}"
    "👉 {{link}}"
)

_env = SandboxedEnvironment(undefined=ChainableUndefined, autoescape=False)


def build_listing_link(listing: Listing, affiliate_tag: str | None = None) -> str:
    """Public product URL, tagged with the tenant's affiliate id when set."""
    url = get_settings().listing_url_template.format(external_id=listing.external_id)
    if affiliate_tag:
        url = str(httpx.URL(url).copy_add_param("tag", affiliate_tag))
    return url


def _rating_line(listing: Listing) -> str:
    if listing.rating is None:
        return ""
    stars = "⭐" * max(0, min(5, round(listing.rating)))
    line = f"{stars} {listing.rating:.1f}/5"
    if listing.review_count:
        line += f" ({listing.review_count} reviews)"
    return line


def template_context(listing: Listing, link: str) -> dict[str, Any]:
    return {
        "title": listing.title,
        "price": f"{listing.current_price:.2f}",
        "original_price": f"{listing.original_price:.2f}" if listing.original_price else "",
        "discount": listing.discount,
        "link": link,
        "category": str(listing.category_id) if listing.category_id is not None else "",
        "rating": f"{listing.rating:.1f}" if listing.rating is not None else "",
        "review_count": listing.review_count if listing.review_count is not None else "",
        "rating_line": _rating_line(listing),
        "external_id": listing.external_id,
    }


def render_default(listing: Listing, link: str) -> str:
    return _env.from_string(DEFAULT_TEMPLATE).render(template_context(listing, link)).strip()


def render_template(template: str | None, listing: Listing, link: str) -> str:
    """Render a rule template, falling back to the default one.

    Args:
        template: Rule template; None/blank selects the default.
        listing: Listing to substitute.
        link: Affiliate link for `{{link}}`.

    Returns:
        Rendered, stripped text (never raises for template errors).
    """
    if not template or not template.strip():
        return render_default(listing, link)
    try:
        text = _env.from_string(template).render(template_context(listing, link)).strip()
    except Exception as e:
        logger.warning(f"[templates] invalid template, using default: {e}")
        return render_default(listing, link)
    if not text:
        logger.warning("[templates] template rendered empty, using default")
        return render_default(listing, link)
    return text
