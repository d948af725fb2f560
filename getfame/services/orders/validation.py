"""Draft validation against the referenced catalog service."""

import re
from decimal import Decimal

from getfame.common.errors import InvalidOrder
from getfame.common.money import order_total, to_cents
from getfame.services.catalog.service import Service
from getfame.services.orders.schemas import OrderDraft

LINK_PATTERNS: dict[str, re.Pattern[str]] = {
    "instagram": re.compile(r"^https?://(www\.)?instagram\.com/.+", re.IGNORECASE),
    "tiktok": re.compile(r"^https?://(www\.|vm\.)?tiktok\.com/.+", re.IGNORECASE),
    "youtube": re.compile(r"^https?://(www\.|m\.)?(youtube\.com|youtu\.be)/.+", re.IGNORECASE),
    "twitter": re.compile(r"^https?://(www\.)?(twitter\.com|x\.com)/.+", re.IGNORECASE),
    "facebook": re.compile(r"^https?://(www\.|m\.)?facebook\.com/.+", re.IGNORECASE),
    "telegram": re.compile(r"^https?://(www\.)?(t\.me|telegram\.me)/.+", re.IGNORECASE),
    "spotify": re.compile(r"^https?://open\.spotify\.com/.+", re.IGNORECASE),
    "twitch": re.compile(r"^https?://(www\.)?twitch\.tv/.+", re.IGNORECASE),
}
ANY_URL = re.compile(r"^https?://\S+$", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def link_matches_platform(link: str, platform: str) -> bool:
    return bool(LINK_PATTERNS.get(platform.lower(), ANY_URL).match(link))


def validate_draft(
    draft: OrderDraft,
    service: Service,
    min_charge_cents: int = 50,
    max_charge_cents: int = 5_000_000,
) -> Decimal:
    """Validate a draft and return its total at the service's public rate."""

    if draft.service_id != service.id:
        raise InvalidOrder(f"draft is for service {draft.service_id}, not {service.id}")
    if not service.min_quantity <= draft.quantity <= service.max_quantity:
        raise InvalidOrder(
            f"Quantity must be between {service.min_quantity} and {service.max_quantity}"
        )
    if not link_matches_platform(draft.link, service.platform):
        raise InvalidOrder("Invalid link format for this platform")
    if not EMAIL_PATTERN.match(draft.email):
        raise InvalidOrder("Invalid email")
    total = order_total(service.public_rate, draft.quantity)
    if not min_charge_cents <= to_cents(total) <= max_charge_cents:
        raise InvalidOrder(f"Order total {total} is outside the allowed charge range")
    return total
