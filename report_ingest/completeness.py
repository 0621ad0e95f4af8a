"""Sanity check of saved record counts against expected minimums."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .models import Category, CheckStatus, CompletenessCheck, CompletenessReport


def check_completeness(
    counts: Mapping[Category, int],
    minimums: Mapping[Category, int],
    categories: Iterable[Category],
) -> CompletenessReport:
    """Grade each category's saved row count.

    A category with no minimum (or a minimum of 0) is always ``ok``.
    Otherwise it is ``ok`` at or above the minimum, ``warn`` when it has
    some rows but fewer than expected, and ``fail`` with none at all.
    A missing category counts as zero rows.
    """
    checks: list[CompletenessCheck] = []
    for category in categories:
        count = counts.get(category, 0)
        minimum = minimums.get(category, 0)
        if minimum <= 0 or count >= minimum:
            status = CheckStatus.OK
        elif count > 0:
            status = CheckStatus.WARN
        else:
            status = CheckStatus.FAIL
        checks.append(CompletenessCheck(category=category, count=count, minimum=minimum, status=status))

    return CompletenessReport(
        passed=all(c.status is not CheckStatus.FAIL for c in checks),
        checks=checks,
    )


def completeness_warnings(report: CompletenessReport) -> list[str]:
    warnings = [
        f"{c.category.value}: only {c.count} records, expected at least {c.minimum}"
        for c in report.with_status(CheckStatus.WARN)
    ]
    failed = report.with_status(CheckStatus.FAIL)
    if failed:
        names = ", ".join(c.category.value for c in failed)
        warnings.append(f"Data validation warning: {names} returned 0 records")
    return warnings
