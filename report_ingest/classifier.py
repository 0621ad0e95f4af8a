"""Map report emails and attachment file names to categories.

Two independent strategies, both pure:

* subject rules: ordered regexes over the email subject line.
* filename rules: keyword checks over the attachment file name.

``classify`` tries the subject first and falls back to the file name.
Files extracted from an archive go through ``classify_archive_member``,
which reverses the order: one archive carries several categories under
a single subject, so the member name is the better signal there.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from .models import Category

# Order matters: first match wins.
SUBJECT_RULES: list[tuple[re.Pattern[str], Category]] = [
    (re.compile(r"first.?visit", re.I), Category.FIRST_VISITS),
    (re.compile(r"new.?customer", re.I), Category.NEW_CUSTOMERS),
    (re.compile(r"order|transaction", re.I), Category.ORDERS),
    (re.compile(r"cancel", re.I), Category.CANCELED_SUBSCRIPTIONS),
    (re.compile(r"new.*(auto.?renew|subscription)", re.I), Category.NEW_SUBSCRIPTIONS),
    (re.compile(r"active.*(auto.?renew|subscription)", re.I), Category.ACTIVE_SUBSCRIPTIONS),
    (re.compile(r"pause", re.I), Category.PAUSED_SUBSCRIPTIONS),
    (re.compile(r"trial", re.I), Category.TRIALING_SUBSCRIPTIONS),
    (re.compile(r"registration", re.I), Category.FULL_REGISTRATIONS),
    (re.compile(r"revenue.?categor", re.I), Category.REVENUE_CATEGORIES),
]


def _has_any(name: str, *words: str) -> bool:
    return any(w in name for w in words)


_NEW_WORD = re.compile(r"(?<![a-z])new")


# Keyword heuristics over the lower-cased file name, first match wins.
FILENAME_RULES: list[tuple[Callable[[str], bool], Category]] = [
    (lambda n: _has_any(n, "first_visit", "first-visit", "firstvisit"), Category.FIRST_VISITS),
    (lambda n: _has_any(n, "new_customer", "new-customer", "newcustomer"), Category.NEW_CUSTOMERS),
    (lambda n: _has_any(n, "order", "transaction"), Category.ORDERS),
    (lambda n: "cancel" in n, Category.CANCELED_SUBSCRIPTIONS),
    (lambda n: bool(_NEW_WORD.search(n)) and _has_any(n, "renew", "subscription"), Category.NEW_SUBSCRIPTIONS),
    (lambda n: "active" in n and _has_any(n, "renew", "subscription"), Category.ACTIVE_SUBSCRIPTIONS),
    (lambda n: "pause" in n, Category.PAUSED_SUBSCRIPTIONS),
    (lambda n: "trial" in n, Category.TRIALING_SUBSCRIPTIONS),
    (lambda n: "registration" in n and "first" not in n, Category.FULL_REGISTRATIONS),
    (lambda n: "revenue" in n, Category.REVENUE_CATEGORIES),
]


def classify_subject(subject: str) -> Category | None:
    for pattern, category in SUBJECT_RULES:
        if pattern.search(subject):
            return category
    return None


def classify_filename(filename: str) -> Category | None:
    lower = filename.lower()
    for matches, category in FILENAME_RULES:
        if matches(lower):
            return category
    return None


def classify(subject: str, filename: str) -> Category | None:
    """Subject rules first, then filename rules; ``None`` if neither matches."""
    return classify_subject(subject) or classify_filename(filename)


def classify_archive_member(subject: str, filename: str) -> Category | None:
    """Filename rules first, then the parent message's subject."""
    return classify_filename(filename) or classify_subject(subject)
