"""
Age-depth modelling from stratigraphic tie-points.

``interpolate`` maps sample depths to ages along the piecewise linear line
through a section's tie-points.  ``calibrate`` runs it for every section of a
core and merges the ages back into the original proxy records.
"""

import logging
import math
from collections import defaultdict

import numpy as np

from .models import TiePoint

logger = logging.getLogger(__name__)

DEFAULT_AGE_DECIMALS = 4
MIN_TIE_POINTS = 2


class AgeModelError(Exception):
    """Base class for age-model failures."""


class DegenerateTiePointsError(AgeModelError, ValueError):
    """Two tie-points of one section share a depth."""

    def __init__(self, section_id, depth):
        self.section_id = section_id
        self.depth = depth
        super().__init__(
            f"Section {section_id!r} has more than one tie-point at depth {depth:g}")


class DelegateFailure(AgeModelError):
    """A delegated age-model computation failed or returned unusable output."""


# ---------------------------------------------------------------------------
# Tie-point sets
# ---------------------------------------------------------------------------

def group_tie_points(tie_points):
    """Partition tie-points by section id, keeping input order."""
    grouped = defaultdict(list)
    for tp in tie_points:
        grouped[tp.section_id].append(tp)
    return dict(grouped)


def validate_tie_points(tie_points):
    """Reject non-finite values and duplicate depths within a section."""
    seen = set()
    for tp in tie_points:
        if not (math.isfinite(tp.depth) and math.isfinite(tp.age)):
            raise ValueError(f"Tie-point in section {tp.section_id!r} is not finite")
        key = (tp.section_id, tp.depth)
        if key in seen:
            raise DegenerateTiePointsError(tp.section_id, tp.depth)
        seen.add(key)
    return list(tie_points)


def _anchors(tie_points):
    pairs = []
    for tp in tie_points:
        if isinstance(tp, TiePoint):
            pairs.append((float(tp.depth), float(tp.age)))
        else:
            depth, age = tp
            pairs.append((float(depth), float(age)))
    # stable: equal depths keep their input order
    pairs.sort(key=lambda p: p[0])
    return pairs


# ---------------------------------------------------------------------------
# Interpolation engine
# ---------------------------------------------------------------------------

def interpolate(depths, tie_points):
    """Compute an age for each depth from a section's tie-points.

    Depths between two tie-points are interpolated along the innermost
    bracketing pair; depths outside the tie-point range are extrapolated
    along the two outermost tie-points on that side.

    Parameters
    ----------
    depths : iterable of float
        Sample depths.  None and NaN entries get no age.
    tie_points : iterable of TiePoint or (depth, age) pairs
        Anchors for one section.

    Returns
    -------
    dict
        ``{depth: age}`` at full float precision.  Empty when fewer than two
        tie-points are given.  A pair of tie-points at the same depth maps to
        the age of the first of the two.
    """
    anchors = _anchors(tie_points)
    if len(anchors) < MIN_TIE_POINTS:
        return {}

    wanted = [float(d) for d in depths if d is not None and not math.isnan(d)]
    if not wanted:
        return {}

    tie_depths = np.array([p[0] for p in anchors], dtype=float)
    tie_ages = np.array([p[1] for p in anchors], dtype=float)
    d = np.array(wanted, dtype=float)

    # upper index of the segment used for each depth, clamped to the end segments
    upper = np.clip(np.searchsorted(tie_depths, d, side='left'), 1, len(anchors) - 1)
    lower = upper - 1

    d0, d1 = tie_depths[lower], tie_depths[upper]
    a0, a1 = tie_ages[lower], tie_ages[upper]
    span = d1 - d0
    degenerate = span == 0
    safe_span = np.where(degenerate, 1.0, span)
    ages = np.where(degenerate, a0, a0 + (a1 - a0) * (d - d0) / safe_span)

    return dict(zip(wanted, ages.tolist()))


# ---------------------------------------------------------------------------
# Calibrator
# ---------------------------------------------------------------------------

def apply_ages(section, ages, decimals=DEFAULT_AGE_DECIMALS):
    """Return a copy of ``section`` whose records carry the ages in ``ages``.

    ``ages`` maps depth to age.  Records whose depth has no age lose any
    previous ``age``; every other field is copied unchanged.
    """
    points = []
    for record in section.data_points:
        age = ages.get(record.depth) if record.depth is not None else None
        if age is not None and decimals is not None:
            age = round(age, decimals)
        points.append(record.with_age(age))
    return section.model_copy(update={'data_points': points})


def calibrate(sections, tie_points, decimals=DEFAULT_AGE_DECIMALS):
    """Assign interpolated ages to every section's records.

    Returns new sections in input order with the same ids and metadata.
    Sections with fewer than two tie-points come back with no ages.
    """
    by_section = group_tie_points(tie_points)
    calibrated = []
    for section in sections:
        anchors = by_section.get(section.id, [])
        if len(anchors) < MIN_TIE_POINTS:
            logger.debug("Section %s: %d tie-point(s), no age model",
                         section.id, len(anchors))
            ages = {}
        else:
            ages = interpolate([r.depth for r in section.data_points], anchors)
        calibrated.append(apply_ages(section, ages, decimals))

    logger.info("Calibrated %d section(s) from %d tie-point(s)",
                len(calibrated), sum(len(v) for v in by_section.values()))
    return calibrated


class LocalAgeModel:
    """Deterministic in-process age model."""

    name = 'local'

    def __init__(self, decimals=DEFAULT_AGE_DECIMALS):
        self.decimals = decimals

    def calibrate(self, sections, tie_points):
        return calibrate(sections, tie_points, decimals=self.decimals)
