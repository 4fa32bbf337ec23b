"""
validate.py - Deterministic code-date rule checks.

This module converts an `ExtractedRecord` into a `ValidationResult`.
No model calls, no I/O: the same record always yields the same result.
"""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Optional

from dateutil import parser as dateparser

from logging_config import get_logger
from models import (
    CallerMetadata,
    CodePosition,
    ExtractedRecord,
    PrintQuality,
    Severity,
    ValidationResult,
    Violation,
    raise_severity,
)

logger = get_logger(__name__)

# -- Rule Thresholds --

DEFAULT_SHELF_LIFE_DAYS = 90
# Used for the future-date check when the caller did not say which product
# is on the line. 90 is the longer of the two codes, so it never produces a
# future_date the 84-day rule would not also produce.

# Canonical printed form: "22FEB2022" (day, month name, four-digit year).
_CODE_DATE_RE = re.compile(r"^\s*(\d{1,2})\s*([A-Za-z]{3,9})\s*(\d{4})\s*$")

_MONTH_NAMES = dateparser.parserinfo()


def parse_code_date(text: Optional[str]) -> Optional[date]:
    """Parse a printed code date ("22FEB2022", "22 Feb 2022", "2022-02-22").

    Only complete dates are accepted; day, month and year must all be
    printed. Nothing is filled in from the current date, so partial lines
    such as "22FEB" or "FEB2022" return None.
    """
    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None

    match = _CODE_DATE_RE.match(raw)
    if match is None:
        try:
            return date.fromisoformat(raw)
        except ValueError:
            return None

    day, month_name, year = match.groups()
    month = _MONTH_NAMES.month(month_name)
    if month is None:
        logger.debug("parse_code_date | unknown_month=%r | raw=%r", month_name, raw)
        return None
    try:
        return date(int(year), month, int(day))
    except ValueError as exc:
        logger.debug("parse_code_date | parse_error=%s | raw=%r", exc, raw)
        return None


def _check_completeness(record: ExtractedRecord, violations: list[Violation], checks: list[str]) -> None:
    if not record.date:
        violations.append(Violation.MISSING_DATE)
        checks.append("Date line missing or unreadable")
    if not record.time:
        violations.append(Violation.MISSING_TIME)
        checks.append("Time stamp missing or unreadable")
    if not record.plant_code:
        violations.append(Violation.MISSING_PMO)
        checks.append("PMO number missing or unreadable")


def _check_position(record: ExtractedRecord, violations: list[Violation], checks: list[str]) -> Severity:
    if record.position is CodePosition.ON_MARK:
        violations.append(Violation.CODE_DATE_ON_MARK)
        checks.append("Code date printed over the bellmark")
        return Severity.CRITICAL
    if record.position is CodePosition.OFF_MARK:
        violations.append(Violation.CODE_DATE_OFF_MARK)
        checks.append("Code date displaced from below the bellmark")
        return Severity.MODERATE
    return Severity.MINOR


def _check_quality(record: ExtractedRecord, violations: list[Violation], checks: list[str]) -> Severity:
    if record.print_quality is PrintQuality.UNREADABLE:
        violations.append(Violation.FADED_PRINT)
        checks.append("Print unreadable")
        return Severity.CRITICAL
    if record.print_quality is PrintQuality.FADED:
        violations.append(Violation.FADED_PRINT)
        checks.append("Print faded but legible")
        return Severity.MODERATE
    return Severity.MINOR


def _check_date_logic(
    record: ExtractedRecord,
    metadata: CallerMetadata,
    violations: list[Violation],
    checks: list[str],
) -> None:
    inspection_date = metadata.inspection_date
    if inspection_date is None or not record.date:
        return

    printed = parse_code_date(record.date)
    if printed is None:
        violations.append(Violation.INVALID_FORMAT)
        checks.append(f"Date {record.date!r} is not a recognizable code date")
        return

    if printed < inspection_date:
        violations.append(Violation.EXPIRED)
        checks.append(f"Date {printed.isoformat()} is before inspection day {inspection_date.isoformat()}")
        return

    shelf_life = (
        metadata.expected_product.code_type.shelf_life_days
        if metadata.expected_product is not None
        else DEFAULT_SHELF_LIFE_DAYS
    )
    if printed > inspection_date + timedelta(days=shelf_life):
        violations.append(Violation.FUTURE_DATE)
        checks.append(
            f"Date {printed.isoformat()} is more than {shelf_life} days after inspection day "
            f"{inspection_date.isoformat()}"
        )


def _check_product(
    record: ExtractedRecord,
    metadata: CallerMetadata,
    violations: list[Violation],
    checks: list[str],
) -> None:
    expected = metadata.expected_product
    if expected is None:
        return

    if record.code_type is not None and record.code_type is not expected.code_type:
        violations.append(Violation.WRONG_CODE_TYPE)
        checks.append(f"Code type {record.code_type.value} does not match expected {expected.code_type.value}")

    if record.price_marked is not None and record.price_marked != expected.price_marked:
        violations.append(Violation.WRONG_PRICE_MARKING)
        found = "price printed" if record.price_marked else "no price printed"
        checks.append(f"Bag has {found} but product {expected.value} expects otherwise")


def validate_record(
    record: ExtractedRecord,
    metadata: Optional[CallerMetadata] = None,
) -> ValidationResult:
    """Apply the fixed rule order and return violations plus severity.

    Order: completeness (date, time, PMO), positioning, print quality, then
    the metadata-driven checks (date logic, code type, price marking).
    Completeness gaps never block later checks. Severity starts at minor
    and only rises; the metadata-driven checks never change it.
    """
    violations: list[Violation] = []
    checks: list[str] = []
    severity = Severity.MINOR

    _check_completeness(record, violations, checks)
    severity = raise_severity(severity, _check_position(record, violations, checks))
    severity = raise_severity(severity, _check_quality(record, violations, checks))

    if metadata is not None:
        _check_date_logic(record, metadata, violations, checks)
        _check_product(record, metadata, violations, checks)

    if violations:
        logger.info(
            "validation_complete | violations=%s | severity=%s",
            [violation.value for violation in violations],
            severity.value,
        )
    else:
        logger.info("validation_complete | violations=[] | result=pass")

    return ValidationResult(violations=violations, severity=severity, checks=checks)
