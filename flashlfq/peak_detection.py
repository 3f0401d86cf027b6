"""Chromatographic peak detection (XIC extraction) and interference splitting."""

from __future__ import annotations

import bisect
import logging

from .chemistry import PpmTolerance
from .indexing import PeakIndexingEngine
from .peaks import ChromatographicPeak, IndexedMassSpectralPeak, Ms1ScanInfo

logger = logging.getLogger(__name__)

MIN_POINTS_TO_CUT = 5


def peakfind(
    index: PeakIndexingEngine,
    ms1_scans: list[Ms1ScanInfo],
    anchor_rt: float,
    mass: float,
    charge: int,
    tolerance: PpmTolerance,
    missed_scans_allowed: int = 1,
) -> list[IndexedMassSpectralPeak]:
    """Extract the XIC of ``mass`` around ``anchor_rt``.

    Starting from the last MS1 scan at or before ``anchor_rt``, walks right then left,
    giving up on a direction after more than ``missed_scans_allowed`` consecutive scans
    without a peak.

    Args:
        index: Spectral index of the file
        ms1_scans: MS1 scan table of the file
        anchor_rt: Retention time to start from
        mass: Neutral mass to extract
        charge: Charge state
        tolerance: Mass tolerance for each lookup
        missed_scans_allowed: Consecutive empty scans tolerated before stopping

    Returns:
        Peaks sorted by retention time

    """
    retention_times = [scan.retention_time for scan in ms1_scans]
    start = max(bisect.bisect_right(retention_times, anchor_rt) - 1, 0)

    xic = []

    missed_scans = 0
    for t in range(start, len(ms1_scans)):
        peak = index.get_indexed_peak(mass, t, tolerance, charge)
        if peak is not None:
            missed_scans = 0
            xic.append(peak)
        elif t != start:
            missed_scans += 1

        if missed_scans > missed_scans_allowed:
            break

    missed_scans = 0
    for t in range(start - 1, -1, -1):
        peak = index.get_indexed_peak(mass, t, tolerance, charge)
        if peak is not None:
            missed_scans = 0
            xic.append(peak)
        else:
            missed_scans += 1

        if missed_scans > missed_scans_allowed:
            break

    xic.sort(key=lambda p: p.retention_time)
    return xic


def _find_valley(timepoints, apex_position: int, discrimination_factor_cutoff: float):
    """Return the valley envelope separating the apex from a second eluting species, if any."""
    for direction in (1, -1):
        valley = None
        valley_position = 0

        i = apex_position + direction
        while 0 <= i < len(timepoints):
            timepoint = timepoints[i]

            if valley is None or timepoint.intensity < valley.intensity:
                valley = timepoint
                valley_position = i

            discrimination_factor = (timepoint.intensity - valley.intensity) / timepoint.intensity
            next_position = valley_position + direction

            if discrimination_factor > discrimination_factor_cutoff and 0 <= next_position < len(timepoints):
                second_valley = timepoints[next_position]
                discrimination_factor = (timepoint.intensity - second_valley.intensity) / timepoint.intensity

                if discrimination_factor > discrimination_factor_cutoff:
                    return valley

            i += direction

    return None


def cut_peak(
    peak: ChromatographicPeak,
    anchor_rt: float,
    discrimination_factor_cutoff: float = 0.6,
) -> None:
    """Split off co-eluting interference from ``peak`` in place.

    The apex-charge envelopes are walked outward from the apex. When intensity rises again
    after a valley by more than the discrimination factor (checked against the valley and
    the point after it), everything on the far side of the valley from the envelope
    closest to ``anchor_rt`` is removed. Repeats until no valley remains.
    """
    while True:
        apex = peak.apex
        if apex is None:
            return

        timepoints = sorted(
            (e for e in peak.isotopic_envelopes if e.charge_state == apex.charge_state),
            key=lambda e: e.indexed_peak.zero_based_ms1_scan_index,
        )
        if len(timepoints) < MIN_POINTS_TO_CUT:
            return

        apex_position = next(i for i, e in enumerate(timepoints) if e is apex)
        valley = _find_valley(timepoints, apex_position, discrimination_factor_cutoff)
        if valley is None:
            return

        valley_rt = valley.indexed_peak.retention_time
        closest = min(peak.isotopic_envelopes, key=lambda e: abs(e.indexed_peak.retention_time - anchor_rt))

        if closest.indexed_peak.retention_time >= valley_rt:
            peak.isotopic_envelopes = [
                e for e in peak.isotopic_envelopes if e.indexed_peak.retention_time >= valley_rt
            ]
        else:
            peak.isotopic_envelopes = [
                e for e in peak.isotopic_envelopes if e.indexed_peak.retention_time < valley_rt
            ]

        peak.split_rt = valley_rt
        logger.debug(f"Split peak at RT {valley_rt:.3f}: {len(peak.isotopic_envelopes)} envelopes kept")
