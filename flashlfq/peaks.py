"""Data model for elution features and the identifications they are anchored to."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path

from .chemistry import to_mass


@dataclass(frozen=True)
class SpectraFileInfo:
    """A spectra file and its place in the experimental design."""

    full_file_path: str
    condition: str = ''
    biological_replicate: int = 0
    technical_replicate: int = 0
    fraction: int = 0

    @property
    def filename_without_extension(self) -> str:
        return Path(self.full_file_path).stem

    def sort_key(self) -> tuple:
        return (self.condition, self.biological_replicate, self.fraction, self.technical_replicate)


@dataclass(frozen=True)
class Ms1ScanInfo:
    """Position of one MS1 scan within its file."""

    one_based_scan_number: int
    zero_based_ms1_scan_index: int
    retention_time: float


@dataclass(frozen=True)
class IndexedMassSpectralPeak:
    """A single centroided MS1 peak.

    Two peaks are the same peak when they share m/z and MS1 scan index.
    """

    mz: float
    intensity: float = field(compare=False)
    zero_based_ms1_scan_index: int
    retention_time: float = field(compare=False)


class IsotopicEnvelope:
    """An isotope envelope anchored on its peak-finding isotope peak.

    Intensity is the summed isotope intensity divided by the charge.
    """

    def __init__(self, indexed_peak: IndexedMassSpectralPeak, charge_state: int, intensity: float):
        self.indexed_peak = indexed_peak
        self.charge_state = charge_state
        self.intensity = intensity / charge_state

    def normalize(self, normalization_factor: float) -> None:
        self.intensity *= normalization_factor

    def __repr__(self) -> str:
        return (
            f"IsotopicEnvelope(mz={self.indexed_peak.mz:.4f}, z={self.charge_state}, "
            f"rt={self.indexed_peak.retention_time:.3f}, intensity={self.intensity:.1f})"
        )


@dataclass(eq=False)
class Identification:
    """A peptide identification from an external search engine.

    ``peakfinding_mass`` is filled in once per modified sequence from its theoretical
    isotope distribution; until then it equals the monoisotopic mass.
    """

    base_sequence: str
    modified_sequence: str
    monoisotopic_mass: float
    precursor_charge: int
    ms2_retention_time: float
    file_info: SpectraFileInfo
    protein_groups: frozenset[str] = frozenset()
    peakfinding_mass: float = math.nan

    def __post_init__(self):
        if math.isnan(self.peakfinding_mass):
            self.peakfinding_mass = self.monoisotopic_mass


class ChromatographicPeak:
    """An elution feature: the isotope envelopes of one or more identifications.

    Apex, intensity, mass error and number of observed charge states are derived from the
    current envelopes every time they are read.
    """

    def __init__(
        self,
        identification: Identification,
        is_mbr_peak: bool,
        file_info: SpectraFileInfo,
        integrate: bool = False,
    ):
        self.identifications: list[Identification] = [identification]
        self.isotopic_envelopes: list[IsotopicEnvelope] = []
        self.is_mbr_peak = is_mbr_peak
        self.spectra_file_info = file_info
        self.integrate = integrate
        self.split_rt = 0.0
        self.mbr_score = 0.0
        self.rt_hypothesis: float | None = None
        self.rt_std_dev: float | None = None
        self.rt_interquartile_range: float | None = None
        self.num_identifications_by_base_seq = 1
        self.num_identifications_by_full_seq = 1

    @property
    def apex(self) -> IsotopicEnvelope | None:
        if not self.isotopic_envelopes:
            return None
        return max(self.isotopic_envelopes, key=lambda e: e.intensity)

    @property
    def intensity(self) -> float:
        apex = self.apex
        if apex is None:
            return 0.0
        if self.integrate:
            return sum(e.intensity for e in self.isotopic_envelopes)
        return apex.intensity

    @property
    def mass_error(self) -> float:
        """Apex mass error in ppm against the closest identification's peak-finding mass."""
        apex = self.apex
        if apex is None:
            return math.nan

        apex_mass = to_mass(apex.indexed_peak.mz, apex.charge_state)
        errors = [
            (apex_mass - ident.peakfinding_mass) / ident.peakfinding_mass * 1e6
            for ident in self.identifications
        ]
        return min(errors, key=abs)

    @property
    def num_charge_states_observed(self) -> int:
        return len({e.charge_state for e in self.isotopic_envelopes})

    def set_rt_window(
        self,
        rt_hypothesis: float,
        rt_std_dev: float | None,
        rt_interquartile_range: float | None,
    ) -> None:
        self.rt_hypothesis = rt_hypothesis
        self.rt_std_dev = rt_std_dev
        self.rt_interquartile_range = rt_interquartile_range

    def resolve_identifications(self) -> None:
        self.num_identifications_by_base_seq = len({i.base_sequence for i in self.identifications})
        self.num_identifications_by_full_seq = len({i.modified_sequence for i in self.identifications})

    def merge_feature_with(self, other: ChromatographicPeak) -> None:
        """Absorb another peak's identifications and any envelopes not already present."""
        if other is self:
            return

        for ident in other.identifications:
            if not any(ident is mine for mine in self.identifications):
                self.identifications.append(ident)
        self.resolve_identifications()

        own_peaks = {e.indexed_peak for e in self.isotopic_envelopes}
        for envelope in other.isotopic_envelopes:
            if envelope.indexed_peak not in own_peaks:
                self.isotopic_envelopes.append(envelope)
                own_peaks.add(envelope.indexed_peak)

    def __repr__(self) -> str:
        sequences = '|'.join(dict.fromkeys(i.modified_sequence for i in self.identifications))
        kind = 'MBR' if self.is_mbr_peak else 'MSMS'
        return (
            f"ChromatographicPeak({sequences}, {kind}, file={self.spectra_file_info.filename_without_extension}, "
            f"envelopes={len(self.isotopic_envelopes)}, intensity={self.intensity:.1f})"
        )


@dataclass(frozen=True)
class RetentionTimeCalibDataPoint:
    """A sequence confidently quantified in both a donor and an acceptor file."""

    donor: ChromatographicPeak
    acceptor: ChromatographicPeak
    donor_rt: float = field(init=False)
    rt_diff: float = field(init=False)

    def __post_init__(self):
        donor_rt = self.donor.apex.indexed_peak.retention_time
        object.__setattr__(self, "donor_rt", donor_rt)
        object.__setattr__(self, "rt_diff", self.acceptor.apex.indexed_peak.retention_time - donor_rt)
