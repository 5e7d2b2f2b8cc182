"""
Composite splice: per-section age windows merged into one time series.
"""

import logging
import math
import numbers

from .models import RESERVED_KEYS, SpliceInterval

logger = logging.getLogger(__name__)

# Accepted names for the two bounds of a splice interval
INTERVAL_FIELDS = {
    'start': 'start_age',
    'startAge': 'start_age',
    'start_age': 'start_age',
    'end': 'end_age',
    'endAge': 'end_age',
    'end_age': 'end_age',
}


def parse_bound(raw_value):
    """Parse a user-entered bound; empty input clears it."""
    if raw_value is None:
        return None
    text = str(raw_value).strip()
    if not text:
        return None
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"Splice bound must be a finite number, got {raw_value!r}")
    return value


def set_interval(intervals, section_id, field, raw_value):
    """Return the section's interval with one bound set from ``raw_value``.

    ``intervals`` is not modified.  Start after end is allowed; the window
    is normalized when the composite is assembled.
    """
    key = INTERVAL_FIELDS.get(field)
    if key is None:
        raise ValueError(f"Unknown splice interval field: {field!r}")
    current = intervals.get(section_id) or SpliceInterval(section_id=section_id)
    return current.model_copy(update={key: parse_bound(raw_value)})


def assemble(calibrated_sections, intervals):
    """Build the composite series from calibrated sections.

    Returns an empty list when ``calibrated_sections`` is None.  Each section
    with both bounds set contributes its records whose age lies within
    ``[min, max]`` of the bounds; the result is sorted by age (stable).
    """
    if calibrated_sections is None:
        return []

    selected = []
    for section in calibrated_sections:
        interval = intervals.get(section.id)
        window = interval.bounds() if interval is not None else None
        if window is None:
            continue
        lo, hi = window
        picked = [r for r in section.data_points
                  if r.age is not None and lo <= r.age <= hi]
        logger.debug("Splice %s [%g, %g]: %d record(s)", section.id, lo, hi, len(picked))
        selected.extend(picked)

    selected.sort(key=lambda r: r.age)
    return selected


def composite_proxies(series):
    """Numeric proxy keys present in a series, in order of first appearance."""
    keys = []
    for record in series:
        for key, value in record.proxies.items():
            if key in RESERVED_KEYS or key in keys:
                continue
            if isinstance(value, numbers.Number) and not isinstance(value, bool):
                keys.append(key)
    return keys
