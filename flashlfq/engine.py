"""Label-free quantification engine.

Files are processed one at a time so that only one spectral index is resident:

1. Theoretical isotope distributions and peak-finding masses per modified sequence
2. Per file: index MS1 peaks, detect a chromatographic peak for every MS2
   identification, split interference, restrict to the precursor charge's scan range
3. Per file: error checking merges peaks sharing an apex and resolves MBR conflicts
4. Optionally, match-between-runs: transfer identifications from donor files to every
   acceptor file using a retention-time calibration built from shared sequences
5. Peptide-level summaries

Identifications (and donor peaks during match-between-runs) are independent, so each pass
splits them into contiguous ranges processed by a thread pool sharing the read-only index.
"""

from __future__ import annotations

import logging
import math
import os
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import numpy as np
from scipy import stats

from .calibration import (
    RtWindow,
    build_rt_calibration_curve,
    estimate_rt_window,
    find_nearby_calibration_points,
    rt_window_to_scan_range,
)
from .chemistry import PpmTolerance, theoretical_isotope_distribution, to_mass
from .indexing import PeakIndexingEngine
from .isotopes import IsotopeEnvelopeMatcher
from .peak_detection import cut_peak, peakfind
from .peaks import (
    ChromatographicPeak,
    Identification,
    IndexedMassSpectralPeak,
    Ms1ScanInfo,
    SpectraFileInfo,
)
from .results import FlashLfqResults
from .spectra_reader import SpectraReader

logger = logging.getLogger(__name__)

MIN_PPM_ERRORS_FOR_MBR_TOLERANCE = 3
IQR_TO_STD_DEV = 1.36


class FlashLfqError(Exception):
    """Fatal failure of a quantification run."""


@dataclass
class FlashLfqConfig:
    """Quantification settings."""

    # Mass tolerances (ppm)
    ppm_tolerance: float = 10.0
    isotope_ppm_tolerance: float = 5.0
    peakfinding_ppm_tolerance: float = 20.0
    mbr_ppm_tolerance: float = 10.0

    # Peak detection
    num_isotopes_required: int = 2
    missed_scans_allowed: int = 1
    discrimination_factor_to_cut_peak: float = 0.6
    integrate: bool = False
    id_specific_charge_state: bool = False

    # Match-between-runs
    match_between_runs: bool = False
    mbr_rt_window: float = 2.5
    require_msms_id_in_condition: bool = False

    # Peptide summaries
    quantify_ambiguous_peptides: bool = False

    # -1 uses all processors but one
    max_threads: int = -1

    def __post_init__(self):
        for name in ('ppm_tolerance', 'isotope_ppm_tolerance', 'peakfinding_ppm_tolerance', 'mbr_ppm_tolerance'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.num_isotopes_required < 1:
            raise ValueError(f"num_isotopes_required must be at least 1, got {self.num_isotopes_required}")
        if self.missed_scans_allowed < 0:
            raise ValueError(f"missed_scans_allowed must be non-negative, got {self.missed_scans_allowed}")
        if self.mbr_rt_window <= 0:
            raise ValueError(f"mbr_rt_window must be positive, got {self.mbr_rt_window}")
        if self.max_threads != -1 and self.max_threads < 1:
            raise ValueError(f"max_threads must be -1 or at least 1, got {self.max_threads}")


def resolve_max_threads(max_threads: int) -> int:
    """Number of worker threads: -1 or more than available means all processors but one."""
    cpu_count = os.cpu_count() or 1
    if max_threads == -1 or max_threads >= cpu_count:
        max_threads = cpu_count - 1
    return max(max_threads, 1)


def _partition(n_items: int, n_parts: int) -> list[tuple[int, int]]:
    """Split range(n_items) into at most n_parts contiguous [start, end) ranges."""
    n_parts = max(1, min(n_parts, n_items))
    chunk = math.ceil(n_items / n_parts)
    return [(start, min(start + chunk, n_items)) for start in range(0, n_items, chunk)]


class FlashLfqEngine:
    """Quantify identified peptides across spectra files.

    Args:
        identifications: MS2 identifications from all files
        spectra_files: Files to quantify; defaults to the files the identifications came from
        config: Quantification settings
        reader: Source of MS1 scans; defaults to mzML
        isotope_distributions: Theoretical (mass shift, abundance) pairs per modified
            sequence; sequences not given are computed
        index_directory: Where indexes are written between passes when matching between
            runs; defaults to a temporary directory

    """

    def __init__(
        self,
        identifications: list[Identification],
        spectra_files: list[SpectraFileInfo] | None = None,
        config: FlashLfqConfig | None = None,
        reader: SpectraReader | None = None,
        isotope_distributions: dict[str, list[tuple[float, float]]] | None = None,
        index_directory: Path | None = None,
    ):
        self.config = config if config is not None else FlashLfqConfig()
        self.identifications = list(identifications)

        if spectra_files is None:
            spectra_files = list(dict.fromkeys(i.file_info for i in self.identifications))
        self.spectra_files = sorted(spectra_files, key=lambda f: f.sort_key())

        known_files = set(self.spectra_files)
        unknown = {i.file_info.full_file_path for i in self.identifications if i.file_info not in known_files}
        if unknown:
            raise ValueError(f"Identifications refer to spectra files not being quantified: {sorted(unknown)}")

        self.max_threads = resolve_max_threads(self.config.max_threads)
        self.isotope_distributions: dict[str, list[tuple[float, float]]] = dict(isotope_distributions or {})
        self.charge_states: list[int] = []
        self.unquantified_files: list[SpectraFileInfo] = []

        self._index = PeakIndexingEngine(reader, index_directory)
        self._index_directory = index_directory
        self._results: FlashLfqResults | None = None

    def run(self) -> FlashLfqResults:
        """Quantify every file and return the results."""
        start_time = time.perf_counter()
        self._results = FlashLfqResults(self.spectra_files, self.identifications)

        self._calculate_theoretical_isotope_distributions()

        if self.config.match_between_runs and self._index_directory is None:
            with tempfile.TemporaryDirectory(prefix='flashlfq_index_') as tmp:
                self._index.index_directory = Path(tmp)
                try:
                    self._quantify_all_files()
                finally:
                    self._index.index_directory = None
        else:
            self._quantify_all_files()

        try:
            self._results.calculate_peptide_results(self.config.quantify_ambiguous_peptides)
        except Exception as e:
            raise FlashLfqError(f"Peptide quantification failed: {e}") from e

        n_peaks = sum(len(p) for p in self._results.peaks.values())
        logger.info(f"Quantified {n_peaks:,} peaks in {time.perf_counter() - start_time:.1f}s")
        return self._results

    def _quantify_all_files(self) -> None:
        for file_info in self.spectra_files:
            if not self._index.index_mass_spectral_peaks(file_info):
                logger.warning(f"Skipping {file_info.filename_without_extension}: file could not be indexed")
                self.unquantified_files.append(file_info)
                continue

            self._quantify_ms2_identified_peptides(file_info)

            if self.config.match_between_runs:
                self._index.serialize_index(file_info)
            else:
                self._index.clear_index()

            self._run_error_checking(file_info)
            logger.info(
                f"{file_info.filename_without_extension}: {len(self._results.peaks[file_info]):,} peaks"
            )

        if self.config.match_between_runs:
            for file_info in self.spectra_files:
                if file_info in self.unquantified_files:
                    continue
                self._quantify_match_between_runs_peaks(file_info)
                self._index.clear_index()

    def _calculate_theoretical_isotope_distributions(self) -> None:
        """Isotope distribution and peak-finding mass for every modified sequence."""
        by_sequence: dict[str, list[Identification]] = {}
        for ident in self.identifications:
            by_sequence.setdefault(ident.modified_sequence, []).append(ident)

        for sequence, idents in by_sequence.items():
            if sequence not in self.isotope_distributions:
                self.isotope_distributions[sequence] = theoretical_isotope_distribution(
                    idents[0].base_sequence,
                    idents[0].monoisotopic_mass,
                    self.config.num_isotopes_required,
                )

            distribution = self.isotope_distributions[sequence]
            most_abundant_shift = max(distribution, key=lambda d: d[1])[0]
            for ident in idents:
                ident.peakfinding_mass = ident.monoisotopic_mass + most_abundant_shift

        if self.identifications:
            charges = [i.precursor_charge for i in self.identifications]
            self.charge_states = list(range(min(charges), max(charges) + 1))

    def _run_partitioned(self, n_items: int, worker: Callable[[int, int], None]) -> None:
        """Run ``worker(start, end)`` over contiguous ranges of ``range(n_items)`` in parallel."""
        if n_items == 0:
            return

        ranges = _partition(n_items, self.max_threads)
        with ThreadPoolExecutor(max_workers=len(ranges)) as executor:
            futures = [executor.submit(worker, start, end) for start, end in ranges]
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"Worker error: {e}")
                    raise

    def _new_matcher(self) -> IsotopeEnvelopeMatcher:
        return IsotopeEnvelopeMatcher(
            self._index,
            self.isotope_distributions,
            PpmTolerance(self.config.isotope_ppm_tolerance),
            self.config.num_isotopes_required,
        )

    def _quantify_ms2_identified_peptides(self, file_info: SpectraFileInfo) -> None:
        """Detect one chromatographic peak per MS2 identification in the indexed file."""
        idents = [i for i in self.identifications if i.file_info == file_info]
        if not idents:
            return

        config = self.config
        ms1_scans = self._index.get_ms1_scans(file_info)
        matcher = self._new_matcher()
        peakfinding_tolerance = PpmTolerance(config.peakfinding_ppm_tolerance)
        ppm_tolerance = PpmTolerance(config.ppm_tolerance)
        chromatographic_peaks: list[ChromatographicPeak | None] = [None] * len(idents)

        def quantify_range(start: int, end: int) -> None:
            for i in range(start, end):
                ident = idents[i]
                peak = ChromatographicPeak(ident, False, file_info, config.integrate)
                chromatographic_peaks[i] = peak

                for charge in self.charge_states:
                    if config.id_specific_charge_state and charge != ident.precursor_charge:
                        continue

                    xic = peakfind(
                        self._index,
                        ms1_scans,
                        ident.ms2_retention_time,
                        ident.peakfinding_mass,
                        charge,
                        peakfinding_tolerance,
                        config.missed_scans_allowed,
                    )
                    xic = [p for p in xic if ppm_tolerance.within(to_mass(p.mz, charge), ident.peakfinding_mass)]
                    peak.isotopic_envelopes.extend(matcher.get_isotopic_envelopes(xic, ident, charge))

                cut_peak(peak, ident.ms2_retention_time, config.discrimination_factor_to_cut_peak)

                if not peak.isotopic_envelopes:
                    continue

                precursor_scans = [
                    e.indexed_peak.zero_based_ms1_scan_index
                    for e in peak.isotopic_envelopes
                    if e.charge_state == ident.precursor_charge
                ]
                if not precursor_scans:
                    peak.isotopic_envelopes = []
                    continue

                low, high = min(precursor_scans), max(precursor_scans)
                peak.isotopic_envelopes = [
                    e for e in peak.isotopic_envelopes
                    if low <= e.indexed_peak.zero_based_ms1_scan_index <= high
                ]

        self._run_partitioned(len(idents), quantify_range)
        self._results.peaks[file_info].extend(chromatographic_peaks)

    def _run_error_checking(self, file_info: SpectraFileInfo) -> None:
        """Merge peaks sharing an apex and resolve MS2/MBR conflicts over the same apex.

        Peaks sharing an apex peak are merged when both are MS2-anchored. An MBR peak loses
        to an MS2-anchored one. Of two MBR peaks, the same sequence merges and otherwise the
        higher MBR score wins.
        """
        peaks = [
            p for p in self._results.peaks[file_info]
            if p is not None and not (p.is_mbr_peak and not p.isotopic_envelopes)
        ]
        peaks.sort(key=lambda p: p.is_mbr_peak)

        grouped_by_apex: dict[IndexedMassSpectralPeak, ChromatographicPeak] = {}
        error_checked: list[ChromatographicPeak] = []

        for peak in peaks:
            peak.resolve_identifications()

            apex = peak.apex
            if apex is None:
                if not peak.is_mbr_peak:
                    error_checked.append(peak)
                continue

            stored = grouped_by_apex.get(apex.indexed_peak)
            if stored is None:
                grouped_by_apex[apex.indexed_peak] = peak
            elif not peak.is_mbr_peak and not stored.is_mbr_peak:
                stored.merge_feature_with(peak)
            elif peak.is_mbr_peak and not stored.is_mbr_peak:
                continue
            elif peak.is_mbr_peak and stored.is_mbr_peak:
                if peak.identifications[0].modified_sequence == stored.identifications[0].modified_sequence:
                    stored.merge_feature_with(peak)
                elif peak.mbr_score > stored.mbr_score:
                    grouped_by_apex[apex.indexed_peak] = peak

        error_checked.extend(grouped_by_apex.values())
        self._results.peaks[file_info] = error_checked

    def _is_fractionated(self, file_info: SpectraFileInfo) -> bool:
        fractions = {
            f.fraction for f in self.spectra_files
            if f.condition == file_info.condition and f.biological_replicate == file_info.biological_replicate
        }
        return len(fractions) > 1

    def _mbr_tolerance(self, acceptor_peaks: list[ChromatographicPeak]) -> PpmTolerance:
        """MBR mass tolerance narrowed to the acceptor file's observed mass errors."""
        ppm_errors = np.array([p.mass_error for p in acceptor_peaks if p.apex is not None])
        if len(ppm_errors) < MIN_PPM_ERRORS_FOR_MBR_TOLERANCE:
            return PpmTolerance(self.config.mbr_ppm_tolerance)

        if len(ppm_errors) > 30:
            spread = stats.iqr(ppm_errors) / IQR_TO_STD_DEV
        else:
            spread = np.std(ppm_errors, ddof=1)

        tolerance = min(abs(float(np.median(ppm_errors))) + 4 * float(spread), self.config.mbr_ppm_tolerance)
        if tolerance <= 0:
            tolerance = self.config.mbr_ppm_tolerance
        return PpmTolerance(tolerance)

    def _quantify_match_between_runs_peaks(self, acceptor_file: SpectraFileInfo) -> None:
        """Transfer identifications from every other file into ``acceptor_file``."""
        config = self.config
        acceptor_peaks = self._results.peaks[acceptor_file]

        apex_to_acceptor_peak: dict[IndexedMassSpectralPeak, ChromatographicPeak] = {}
        for peak in acceptor_peaks:
            apex = peak.apex
            if apex is not None and apex.indexed_peak not in apex_to_acceptor_peak:
                apex_to_acceptor_peak[apex.indexed_peak] = peak

        mbr_tolerance = self._mbr_tolerance(acceptor_peaks)
        acceptor_sequences = {
            i.modified_sequence for p in acceptor_peaks if p.isotopic_envelopes for i in p.identifications
        }

        condition_protein_groups: set[str] = set()
        if config.require_msms_id_in_condition:
            for f in self.spectra_files:
                if f.condition != acceptor_file.condition:
                    continue
                for p in self._results.peaks[f]:
                    if not p.is_mbr_peak:
                        for ident in p.identifications:
                            condition_protein_groups.update(ident.protein_groups)

        self._index.deserialize_index(acceptor_file)
        ms1_scans = self._index.get_ms1_scans(acceptor_file)
        matcher = self._new_matcher()
        acceptor_fractionated = self._is_fractionated(acceptor_file)

        # sequence -> acceptor apex peak -> hypothesis
        mbr_peaks: dict[str, dict[IndexedMassSpectralPeak, ChromatographicPeak]] = {}
        lock = threading.Lock()

        for donor_file in self.spectra_files:
            if donor_file == acceptor_file:
                continue

            if (
                acceptor_fractionated
                and self._is_fractionated(donor_file)
                and abs(acceptor_file.fraction - donor_file.fraction) > 1
            ):
                continue

            donor_peaks = [
                p for p in self._results.peaks[donor_file]
                if not p.is_mbr_peak
                and p.num_identifications_by_full_seq == 1
                and p.isotopic_envelopes
                and p.identifications[0].modified_sequence not in acceptor_sequences
                and (
                    not config.require_msms_id_in_condition
                    or any(g in condition_protein_groups for i in p.identifications for g in i.protein_groups)
                )
            ]
            if not donor_peaks:
                continue

            calibration_curve = build_rt_calibration_curve(self._results.peaks[donor_file], acceptor_peaks)
            curve_rts = [p.donor_rt for p in calibration_curve]
            if not calibration_curve:
                logger.debug(
                    f"No shared sequences between {donor_file.filename_without_extension} and "
                    f"{acceptor_file.filename_without_extension}; searching without RT calibration"
                )
            same_sample = (
                donor_file.condition == acceptor_file.condition
                and donor_file.biological_replicate == acceptor_file.biological_replicate
            )

            def match_range(start: int, end: int) -> None:
                local: dict[str, dict[IndexedMassSpectralPeak, ChromatographicPeak]] = {}

                for donor_peak in donor_peaks[start:end]:
                    donor_rt = donor_peak.apex.indexed_peak.retention_time
                    nearby = find_nearby_calibration_points(calibration_curve, donor_rt, donor_rts=curve_rts)
                    if calibration_curve and not nearby:
                        continue

                    window = estimate_rt_window(donor_rt, nearby, config.mbr_rt_window, use_intensity=same_sample)
                    for hypothesis in self._find_mbr_hypotheses(
                        donor_peak, acceptor_file, window, ms1_scans, matcher, mbr_tolerance, apex_to_acceptor_peak
                    ):
                        _add_mbr_hypothesis(local, hypothesis)

                with lock:
                    for by_apex in local.values():
                        for hypothesis in by_apex.values():
                            _add_mbr_hypothesis(mbr_peaks, hypothesis)

            self._run_partitioned(len(donor_peaks), match_range)

        n_transferred = 0
        for sequence, by_apex in mbr_peaks.items():
            if sequence in acceptor_sequences or not by_apex:
                continue

            hypotheses = sorted(by_apex.values(), key=lambda p: p.mbr_score, reverse=True)
            best = hypotheses[0]

            rt_values = [e.indexed_peak.retention_time for e in best.isotopic_envelopes]
            start_rt, end_rt = min(rt_values), max(rt_values)
            for other in hypotheses[1:]:
                if other.apex.charge_state == best.apex.charge_state:
                    continue
                if start_rt < other.apex.indexed_peak.retention_time < end_rt:
                    best.merge_feature_with(other)

            acceptor_peaks.append(best)
            n_transferred += 1

        logger.info(f"{acceptor_file.filename_without_extension}: {n_transferred:,} peaks transferred by MBR")
        self._run_error_checking(acceptor_file)

    def _find_mbr_hypotheses(
        self,
        donor_peak: ChromatographicPeak,
        acceptor_file: SpectraFileInfo,
        window: RtWindow,
        ms1_scans: list[Ms1ScanInfo],
        matcher: IsotopeEnvelopeMatcher,
        mbr_tolerance: PpmTolerance,
        apex_to_acceptor_peak: dict[IndexedMassSpectralPeak, ChromatographicPeak],
    ) -> list[ChromatographicPeak]:
        """Scored acceptor-file peaks that could be the donor peak's analyte."""
        config = self.config
        donor_ident = donor_peak.identifications[0]
        start_scan, end_scan = rt_window_to_scan_range(ms1_scans, window.lower, window.upper)

        charges = list(dict.fromkeys(i.precursor_charge for i in donor_peak.identifications))
        if donor_peak.apex.charge_state not in charges:
            charges.append(donor_peak.apex.charge_state)

        hypotheses = []
        for charge in charges:
            charge_xic = []
            for scan_index in range(start_scan, end_scan + 1):
                peak = self._index.get_indexed_peak(donor_ident.peakfinding_mass, scan_index, mbr_tolerance, charge)
                if peak is not None:
                    charge_xic.append(peak)
            if not charge_xic:
                continue

            seeds = matcher.get_isotopic_envelopes(charge_xic, donor_ident, charge)

            while seeds:
                seed = seeds[0]
                seed_rt = seed.indexed_peak.retention_time

                acceptor_peak = ChromatographicPeak(donor_ident, True, acceptor_file, config.integrate)
                xic = peakfind(
                    self._index,
                    ms1_scans,
                    seed_rt,
                    donor_ident.peakfinding_mass,
                    charge,
                    mbr_tolerance,
                    config.missed_scans_allowed,
                )
                acceptor_peak.isotopic_envelopes.extend(matcher.get_isotopic_envelopes(xic, donor_ident, charge))
                acceptor_peak.set_rt_window(window.rt_hypothesis, window.rt_std_dev, window.rt_interquartile_range)
                cut_peak(acceptor_peak, seed_rt, config.discrimination_factor_to_cut_peak)

                claimed = {e.indexed_peak for e in acceptor_peak.isotopic_envelopes}
                claimed.add(seed.indexed_peak)
                seeds = [e for e in seeds if e.indexed_peak not in claimed]

                if seed.indexed_peak in apex_to_acceptor_peak or acceptor_peak.apex is None:
                    continue

                acceptor_peak.mbr_score = _mbr_score(donor_peak, acceptor_peak, window)
                hypotheses.append(acceptor_peak)

        return hypotheses


def _mbr_score(donor_peak: ChromatographicPeak, acceptor_peak: ChromatographicPeak, window: RtWindow) -> float:
    """Inverse distance between the expected and observed (RT, log2 intensity) of a hypothesis.

    Without an intensity prior, the intensity term is a constant 1.
    """
    rt_error = window.rt_hypothesis - acceptor_peak.apex.indexed_peak.retention_time

    if window.log2_intensity_offset is not None and donor_peak.intensity > 0 and acceptor_peak.intensity > 0:
        predicted = math.log2(donor_peak.intensity) + window.log2_intensity_offset
        intensity_error = predicted - math.log2(acceptor_peak.intensity)
    else:
        intensity_error = 1.0

    distance = max(math.hypot(rt_error, intensity_error), np.finfo(float).eps)
    return 1.0 / distance


def _add_mbr_hypothesis(
    accumulator: dict[str, dict[IndexedMassSpectralPeak, ChromatographicPeak]],
    hypothesis: ChromatographicPeak,
) -> None:
    """Store a hypothesis; one already stored for the same sequence and apex absorbs it."""
    sequence = hypothesis.identifications[0].modified_sequence
    by_apex = accumulator.setdefault(sequence, {})
    apex_peak = hypothesis.apex.indexed_peak

    existing = by_apex.get(apex_peak)
    if existing is None:
        by_apex[apex_peak] = hypothesis
        return

    existing.mbr_score += hypothesis.mbr_score
    for ident in hypothesis.identifications:
        if not any(ident is mine for mine in existing.identifications):
            existing.identifications.append(ident)
