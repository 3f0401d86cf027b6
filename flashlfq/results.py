"""Quantification results: peaks per file and peptide-level summaries."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import pandas as pd

from .chemistry import to_mz
from .peaks import ChromatographicPeak, Identification, SpectraFileInfo

logger = logging.getLogger(__name__)

MAX_AMBIGUOUS_FRACTION = 0.3

PEAK_COLUMNS = [
    'File Name',
    'Base Sequence',
    'Full Sequence',
    'Protein Group',
    'Peptide Monoisotopic Mass',
    'MS2 Retention Time',
    'Precursor Charge',
    'Theoretical MZ',
    'Peak intensity',
    'Peak RT Start',
    'Peak RT Apex',
    'Peak RT End',
    'Peak MZ',
    'Peak Charge',
    'Num Charge States Observed',
    'Peak Detection Type',
    'MBR Score',
    'PSMs Mapped',
    'Base Sequences Mapped',
    'Full Sequences Mapped',
    'Peak Split Valley RT',
    'Peak Apex Mass Error (ppm)',
]


class DetectionType(Enum):
    """How a peptide's intensity in one file was obtained."""

    MSMS = 'MSMS'
    MBR = 'MBR'
    NOT_DETECTED = 'NotDetected'
    MSMS_AMBIGUOUS_PEAKFINDING = 'MSMSAmbiguousPeakfinding'
    MSMS_IDENTIFIED_BUT_NOT_QUANTIFIED = 'MSMSIdentifiedButNotQuantified'


@dataclass
class Peptide:
    """Per-file intensity, retention time and detection type of one modified sequence."""

    sequence: str
    base_sequence: str
    protein_groups: set[str] = field(default_factory=set)
    intensities: dict[SpectraFileInfo, float] = field(default_factory=dict)
    retention_times: dict[SpectraFileInfo, float] = field(default_factory=dict)
    detection_types: dict[SpectraFileInfo, DetectionType] = field(default_factory=dict)

    def get_intensity(self, file_info: SpectraFileInfo) -> float:
        return self.intensities.get(file_info, 0.0)

    def get_detection_type(self, file_info: SpectraFileInfo) -> DetectionType:
        return self.detection_types.get(file_info, DetectionType.NOT_DETECTED)


def _apex_rt(peak: ChromatographicPeak) -> float:
    apex = peak.apex
    return apex.indexed_peak.retention_time if apex is not None else math.nan


class FlashLfqResults:
    """Peaks found in every spectra file and the peptide table derived from them."""

    def __init__(self, spectra_files: list[SpectraFileInfo], identifications: list[Identification]):
        self.spectra_files = list(spectra_files)
        self.peaks: dict[SpectraFileInfo, list[ChromatographicPeak]] = {f: [] for f in self.spectra_files}
        self.peptide_modified_sequences: dict[str, Peptide] = {}

        for ident in identifications:
            peptide = self.peptide_modified_sequences.get(ident.modified_sequence)
            if peptide is None:
                peptide = Peptide(ident.modified_sequence, ident.base_sequence)
                self.peptide_modified_sequences[ident.modified_sequence] = peptide
            peptide.protein_groups.update(ident.protein_groups)

    def calculate_peptide_results(self, quantify_ambiguous_peptides: bool = False) -> None:
        """Summarize each modified sequence in each file by its most intense peak.

        Peaks shared by several sequences are ambiguous. A sequence whose ambiguous share
        of intensity exceeds 0.3 is flagged, and loses its intensity unless
        ``quantify_ambiguous_peptides`` is set.
        """
        for peptide in self.peptide_modified_sequences.values():
            for file_info in self.spectra_files:
                peptide.detection_types[file_info] = DetectionType.NOT_DETECTED
                peptide.intensities[file_info] = 0.0
                peptide.retention_times[file_info] = 0.0

        for file_info, file_peaks in self.peaks.items():
            grouped: dict[str, list[ChromatographicPeak]] = {}
            for peak in file_peaks:
                if peak.num_identifications_by_full_seq == 1:
                    grouped.setdefault(peak.identifications[0].modified_sequence, []).append(peak)

            for sequence, sequence_peaks in grouped.items():
                best = max(sequence_peaks, key=lambda p: p.intensity)
                intensity = best.intensity

                if intensity > 0:
                    detection_type = DetectionType.MBR if best.is_mbr_peak else DetectionType.MSMS
                elif not best.is_mbr_peak:
                    detection_type = DetectionType.MSMS_IDENTIFIED_BUT_NOT_QUANTIFIED
                else:
                    detection_type = DetectionType.NOT_DETECTED

                peptide = self.peptide_modified_sequences.get(sequence)
                if peptide is None:
                    continue
                peptide.intensities[file_info] = intensity
                peptide.retention_times[file_info] = _apex_rt(best)
                peptide.detection_types[file_info] = detection_type

            for peak in file_peaks:
                if peak.num_identifications_by_full_seq <= 1:
                    continue

                for ident in peak.identifications:
                    peptide = self.peptide_modified_sequences.get(ident.modified_sequence)
                    if peptide is None:
                        continue
                    recorded = peptide.get_intensity(file_info)
                    total = recorded + peak.intensity
                    fraction_ambiguous = peak.intensity / total if total > 0 else 0.0

                    if quantify_ambiguous_peptides:
                        if abs(recorded) < 0.01:
                            peptide.detection_types[file_info] = DetectionType.MSMS_AMBIGUOUS_PEAKFINDING
                            peptide.retention_times[file_info] = _apex_rt(peak)
                            peptide.intensities[file_info] = peak.intensity
                        elif fraction_ambiguous > MAX_AMBIGUOUS_FRACTION:
                            peptide.detection_types[file_info] = DetectionType.MSMS_AMBIGUOUS_PEAKFINDING
                    elif fraction_ambiguous > MAX_AMBIGUOUS_FRACTION:
                        peptide.detection_types[file_info] = DetectionType.MSMS_AMBIGUOUS_PEAKFINDING
                        peptide.intensities[file_info] = 0.0
                        peptide.retention_times[file_info] = _apex_rt(peak)

    def peaks_to_dataframe(self) -> pd.DataFrame:
        """One row per chromatographic peak, across all files."""
        rows = []
        for file_info in self.spectra_files:
            for peak in self.peaks[file_info]:
                first = peak.identifications[0]
                apex = peak.apex
                rt_values = [e.indexed_peak.retention_time for e in peak.isotopic_envelopes]
                protein_groups = sorted({g for i in peak.identifications for g in i.protein_groups})

                rows.append({
                    'File Name': file_info.filename_without_extension,
                    'Base Sequence': '|'.join(dict.fromkeys(i.base_sequence for i in peak.identifications)),
                    'Full Sequence': '|'.join(dict.fromkeys(i.modified_sequence for i in peak.identifications)),
                    'Protein Group': ';'.join(protein_groups),
                    'Peptide Monoisotopic Mass': first.monoisotopic_mass,
                    'MS2 Retention Time': math.nan if peak.is_mbr_peak else first.ms2_retention_time,
                    'Precursor Charge': first.precursor_charge,
                    'Theoretical MZ': to_mz(first.monoisotopic_mass, first.precursor_charge),
                    'Peak intensity': peak.intensity,
                    'Peak RT Start': min(rt_values) if rt_values else math.nan,
                    'Peak RT Apex': _apex_rt(peak),
                    'Peak RT End': max(rt_values) if rt_values else math.nan,
                    'Peak MZ': apex.indexed_peak.mz if apex is not None else math.nan,
                    'Peak Charge': apex.charge_state if apex is not None else math.nan,
                    'Num Charge States Observed': peak.num_charge_states_observed,
                    'Peak Detection Type': 'MBR' if peak.is_mbr_peak else 'MSMS',
                    'MBR Score': peak.mbr_score if peak.is_mbr_peak else math.nan,
                    'PSMs Mapped': len(peak.identifications),
                    'Base Sequences Mapped': peak.num_identifications_by_base_seq,
                    'Full Sequences Mapped': peak.num_identifications_by_full_seq,
                    'Peak Split Valley RT': peak.split_rt,
                    'Peak Apex Mass Error (ppm)': peak.mass_error,
                })

        return pd.DataFrame(rows, columns=PEAK_COLUMNS)

    def peptides_to_dataframe(self) -> pd.DataFrame:
        """One row per modified sequence with per-file intensity, RT and detection type."""
        names = [f.filename_without_extension for f in self.spectra_files]
        columns = (
            ['Sequence', 'Base Sequence', 'Protein Groups']
            + [f'Intensity_{n}' for n in names]
            + [f'RetentionTime (min)_{n}' for n in names]
            + [f'Detection Type_{n}' for n in names]
        )

        rows = []
        for sequence in sorted(self.peptide_modified_sequences):
            peptide = self.peptide_modified_sequences[sequence]
            row = {
                'Sequence': peptide.sequence,
                'Base Sequence': peptide.base_sequence,
                'Protein Groups': ';'.join(sorted(peptide.protein_groups)),
            }
            for file_info, name in zip(self.spectra_files, names):
                row[f'Intensity_{name}'] = peptide.get_intensity(file_info)
                row[f'RetentionTime (min)_{name}'] = peptide.retention_times.get(file_info, 0.0)
                row[f'Detection Type_{name}'] = peptide.get_detection_type(file_info).value
            rows.append(row)

        return pd.DataFrame(rows, columns=columns)

    def write_results(self, peaks_path: Path | None = None, peptides_path: Path | None = None) -> None:
        """Write the peak and peptide tables as TSV."""
        if peaks_path is not None:
            self.peaks_to_dataframe().to_csv(peaks_path, sep='\t', index=False)
            logger.info(f"Wrote peaks to {peaks_path}")
        if peptides_path is not None:
            self.peptides_to_dataframe().to_csv(peptides_path, sep='\t', index=False)
            logger.info(f"Wrote peptides to {peptides_path}")
