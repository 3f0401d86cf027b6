"""Retention-time calibration between a donor and an acceptor file.

The calibration curve pairs the best MS2-anchored peak of every sequence quantified in
both files, sorted by donor apex retention time. For a donor peak, the curve points that
eluted within half a minute of it give the expected RT shift in the acceptor file and how
wide a window to search.
"""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass

import numpy as np
from scipy import stats

from .peaks import ChromatographicPeak, Ms1ScanInfo, RetentionTimeCalibDataPoint

logger = logging.getLogger(__name__)

NEARBY_RT_DIFF = 0.5
STD_DEV_WINDOW_MULTIPLIER = 6.0
IQR_WINDOW_MULTIPLIER = 4.5
MIN_POINTS_FOR_IQR = 6


@dataclass
class RtWindow:
    """Where, and how widely, to search the acceptor file for a donor peak."""

    rt_hypothesis: float
    rt_range: float
    rt_std_dev: float | None = None
    rt_interquartile_range: float | None = None
    log2_intensity_offset: float | None = None

    @property
    def lower(self) -> float:
        return self.rt_hypothesis - self.rt_range / 2.0

    @property
    def upper(self) -> float:
        return self.rt_hypothesis + self.rt_range / 2.0


def best_peaks_by_sequence(peaks: list[ChromatographicPeak]) -> dict[str, ChromatographicPeak]:
    """Most intense unambiguous MS2-anchored peak per modified sequence."""
    best: dict[str, ChromatographicPeak] = {}
    for peak in peaks:
        if peak.apex is None or peak.is_mbr_peak or peak.num_identifications_by_full_seq != 1:
            continue

        sequence = peak.identifications[0].modified_sequence
        current = best.get(sequence)
        if current is None or peak.intensity > current.intensity:
            best[sequence] = peak
    return best


def build_rt_calibration_curve(
    donor_peaks: list[ChromatographicPeak],
    acceptor_peaks: list[ChromatographicPeak],
) -> list[RetentionTimeCalibDataPoint]:
    """Pair sequences quantified in both files, sorted by donor apex retention time."""
    donor_best = best_peaks_by_sequence(donor_peaks)
    acceptor_best = best_peaks_by_sequence(acceptor_peaks)

    curve = [
        RetentionTimeCalibDataPoint(donor_best[sequence], acceptor_peak)
        for sequence, acceptor_peak in acceptor_best.items()
        if sequence in donor_best
    ]
    curve.sort(key=lambda p: p.donor_rt)
    return curve


def calibration_search_index(
    curve: list[RetentionTimeCalibDataPoint],
    donor_rt: float,
    donor_rts: list[float] | None = None,
) -> int:
    """Index of the first calibration point at or after ``donor_rt``, clamped to the curve.

    ``donor_rts`` is the curve's donor RTs in order; pass it when searching one curve repeatedly.
    """
    if donor_rts is None:
        donor_rts = [p.donor_rt for p in curve]
    index = bisect.bisect_left(donor_rts, donor_rt)
    if index >= len(curve) and index >= 1:
        index = len(curve) - 1
    return index


def find_nearby_calibration_points(
    curve: list[RetentionTimeCalibDataPoint],
    donor_rt: float,
    max_rt_diff: float = NEARBY_RT_DIFF,
    donor_rts: list[float] | None = None,
) -> list[RetentionTimeCalibDataPoint]:
    """Calibration points whose donor RT lies within ``max_rt_diff`` of ``donor_rt``."""
    if not curve:
        return []

    index = calibration_search_index(curve, donor_rt, donor_rts)
    nearby = []

    for j in range(index, len(curve)):
        point = curve[j]
        if abs(point.donor_rt - donor_rt) < max_rt_diff:
            nearby.append(point)
        else:
            break

    for j in range(index - 1, -1, -1):
        point = curve[j]
        if abs(point.donor_rt - donor_rt) < max_rt_diff:
            nearby.append(point)
        else:
            break

    return nearby


def estimate_rt_window(
    donor_rt: float,
    nearby_points: list[RetentionTimeCalibDataPoint],
    max_rt_window: float,
    use_intensity: bool = False,
) -> RtWindow:
    """Estimate the acceptor-file RT window for a donor peak.

    The window is centred on the donor RT plus the median RT shift of the nearby
    calibration points. Its width defaults to ``max_rt_window`` and narrows to 6 standard
    deviations (2-5 points) or 4.5 interquartile ranges (6 or more points) of the shifts,
    never exceeding ``max_rt_window``.

    Args:
        donor_rt: Apex retention time of the donor peak
        nearby_points: Calibration points near ``donor_rt``; empty means no calibration
        max_rt_window: Widest window allowed, in minutes
        use_intensity: Also estimate the median log2 intensity shift (acceptor - donor)

    Returns:
        RtWindow for the acceptor file

    """
    if not nearby_points:
        return RtWindow(rt_hypothesis=donor_rt, rt_range=max_rt_window)

    rt_diffs = np.array([p.rt_diff for p in nearby_points])
    median = float(np.median(rt_diffs))

    rt_range = max_rt_window
    rt_std_dev = None
    rt_iqr = None

    if 1 < len(rt_diffs) < MIN_POINTS_FOR_IQR and np.std(rt_diffs, ddof=1) > 0:
        rt_std_dev = float(np.std(rt_diffs, ddof=1))
        rt_range = rt_std_dev * STD_DEV_WINDOW_MULTIPLIER
    elif len(rt_diffs) >= MIN_POINTS_FOR_IQR and stats.iqr(rt_diffs) > 0:
        rt_iqr = float(stats.iqr(rt_diffs))
        rt_range = rt_iqr * IQR_WINDOW_MULTIPLIER

    rt_range = min(rt_range, max_rt_window)

    log2_offset = None
    if use_intensity:
        offsets = [
            math.log2(p.acceptor.intensity) - math.log2(p.donor.intensity)
            for p in nearby_points
            if p.acceptor.intensity > 0 and p.donor.intensity > 0
        ]
        if offsets:
            log2_offset = float(np.median(offsets))

    return RtWindow(
        rt_hypothesis=donor_rt + median,
        rt_range=rt_range,
        rt_std_dev=rt_std_dev,
        rt_interquartile_range=rt_iqr,
        log2_intensity_offset=log2_offset,
    )


def rt_window_to_scan_range(ms1_scans: list[Ms1ScanInfo], lower: float, upper: float) -> tuple[int, int]:
    """Zero-based MS1 scan indices bracketing [lower, upper], inclusive.

    Starts at the last scan at or before ``lower`` and ends at the first scan at or after
    ``upper``; defaults to the first and last scans of the file.
    """
    start = ms1_scans[0]
    end = ms1_scans[-1]
    for scan in ms1_scans:
        if scan.retention_time <= lower:
            start = scan
        if scan.retention_time >= upper:
            end = scan
            break
    return start.zero_based_ms1_scan_index, end.zero_based_ms1_scan_index
