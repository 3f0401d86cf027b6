"""Isotope envelope validation.

A candidate XIC peak is accepted as the peak-finding isotope of an envelope when the
neighbouring isotopes are present in the same scan in roughly the expected proportions,
their intensities correlate with the theoretical distribution, and neither interpretation
shifted by one C13-C12 mass difference fits as well.
"""

from __future__ import annotations

import logging

import numpy as np

from .chemistry import C13_MINUS_C12, PpmTolerance, to_mass
from .indexing import PeakIndexingEngine
from .peaks import Identification, IndexedMassSpectralPeak, IsotopicEnvelope

logger = logging.getLogger(__name__)

MIN_ENVELOPE_CORRELATION = 0.7
MAX_DECOY_CORRELATION_GAIN = 0.1
MAX_INTENSITY_RATIO = 4.0


def pearson_correlation(observed: list[float], expected: list[float]) -> float:
    """Pearson correlation, NaN when either side has fewer than two points or no variance."""
    if len(observed) < 2:
        return np.nan

    x = np.asarray(observed, dtype=float)
    y = np.asarray(expected, dtype=float)
    x = x - x.mean()
    y = y - y.mean()
    denominator = np.sqrt(np.dot(x, x) * np.dot(y, y))
    if denominator == 0:
        return np.nan
    return float(np.dot(x, y) / denominator)


class IsotopeEnvelopeMatcher:
    """Turn XIC peaks into isotope envelopes for one spectral index.

    Args:
        index: Spectral index of the file being quantified
        isotope_distributions: Theoretical (mass shift, abundance) pairs per modified sequence
        isotope_tolerance: Tolerance for looking up the non-peak-finding isotopes
        num_isotopes_required: Minimum number of isotopes observed for an envelope

    """

    def __init__(
        self,
        index: PeakIndexingEngine,
        isotope_distributions: dict[str, list[tuple[float, float]]],
        isotope_tolerance: PpmTolerance,
        num_isotopes_required: int = 2,
    ):
        self.index = index
        self.isotope_distributions = isotope_distributions
        self.isotope_tolerance = isotope_tolerance
        self.num_isotopes_required = num_isotopes_required

    def get_isotopic_envelopes(
        self,
        xic: list[IndexedMassSpectralPeak],
        identification: Identification,
        charge: int,
    ) -> list[IsotopicEnvelope]:
        distribution = self.isotope_distributions[identification.modified_sequence]
        if len(distribution) < self.num_isotopes_required:
            return []

        mass_shifts = [shift for shift, _ in distribution]
        abundances = [abundance for _, abundance in distribution]
        peakfinding_index = abundances.index(max(abundances))

        envelopes = []
        for peak in xic:
            intensity = self._envelope_intensity(
                peak, identification, charge, mass_shifts, abundances, peakfinding_index
            )
            if intensity is not None:
                envelopes.append(IsotopicEnvelope(peak, charge, intensity))

        return envelopes

    def _envelope_intensity(
        self,
        peak: IndexedMassSpectralPeak,
        identification: Identification,
        charge: int,
        mass_shifts: list[float],
        abundances: list[float],
        peakfinding_index: int,
    ) -> float | None:
        """Summed isotope intensity if ``peak`` heads a valid envelope, else None."""
        observed_mass_error = to_mass(peak.mz, charge) - identification.peakfinding_mass
        scan = peak.zero_based_ms1_scan_index
        experimental = [0.0] * len(abundances)

        # (observed intensity, theoretical intensity, mass) per series; -1 and +1 are the
        # decoy series offset by one C13-C12 difference
        series: dict[int, list[tuple[float, float, float]]] = {-1: [], 0: [], 1: []}

        for shift in (-1, 0, 1):
            for direction in (-1, 1):
                i = peakfinding_index - 1 if direction == -1 else peakfinding_index

                while 0 <= i < len(abundances):
                    isotope_mass = (
                        identification.monoisotopic_mass
                        + observed_mass_error
                        + mass_shifts[i]
                        + shift * C13_MINUS_C12
                    )
                    theoretical_intensity = abundances[i] * peak.intensity

                    isotope_peak = self.index.get_indexed_peak(
                        isotope_mass, scan, self.isotope_tolerance, charge
                    )
                    if (
                        isotope_peak is None
                        or isotope_peak.intensity < theoretical_intensity / MAX_INTENSITY_RATIO
                        or isotope_peak.intensity > theoretical_intensity * MAX_INTENSITY_RATIO
                    ):
                        break

                    series[shift].append((isotope_peak.intensity, theoretical_intensity, isotope_mass))
                    if shift == 0:
                        experimental[i] = isotope_peak.intensity
                    i += direction

        if len(series[0]) < self.num_isotopes_required:
            return None

        correlation = pearson_correlation(
            [s[0] for s in series[0]], [s[1] for s in series[0]]
        )

        # pad each series with the isotope just below its lightest match, expected to be absent
        for observations in series.values():
            if not observations:
                continue
            unexpected_mass = min(s[2] for s in observations) - C13_MINUS_C12
            unexpected_peak = self.index.get_indexed_peak(
                unexpected_mass, scan, self.isotope_tolerance, charge
            )
            unexpected_intensity = unexpected_peak.intensity if unexpected_peak is not None else 0.0
            observations.append((unexpected_intensity, 0.0, unexpected_mass))

        padded = {
            shift: pearson_correlation([s[0] for s in obs], [s[1] for s in obs])
            for shift, obs in series.items()
        }
        for shift in (-1, 1):
            if np.isnan(padded[shift]):
                padded[shift] = -1.0

        if not (
            correlation > MIN_ENVELOPE_CORRELATION
            and padded[-1] - padded[0] < MAX_DECOY_CORRELATION_GAIN
            and padded[1] - padded[0] < MAX_DECOY_CORRELATION_GAIN
        ):
            return None

        peakfinding_intensity = experimental[peakfinding_index]
        for i, observed in enumerate(experimental):
            if observed == 0:
                experimental[i] = abundances[i] * peakfinding_intensity

        return sum(experimental)
