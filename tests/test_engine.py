"""End-to-end tests for the quantification engine on synthetic MS1 data."""

import math

import numpy as np
import pytest

from flashlfq import engine as engine_module
from flashlfq.calibration import RtWindow
from flashlfq.chemistry import C13_MINUS_C12, to_mz
from flashlfq.engine import (
    FlashLfqConfig,
    FlashLfqEngine,
    FlashLfqError,
    _add_mbr_hypothesis,
    _mbr_score,
    _partition,
    resolve_max_threads,
)
from flashlfq.peaks import (
    ChromatographicPeak,
    Identification,
    IndexedMassSpectralPeak,
    IsotopicEnvelope,
    SpectraFileInfo,
)
from flashlfq.results import DetectionType, FlashLfqResults
from flashlfq.spectra_reader import InMemorySpectraReader, Ms1Scan

DISTRIBUTION = [(0.0, 1.0), (C13_MINUS_C12, 0.5)]
BACKGROUND_MZ = 300.0


def make_scans(n_scans, signals, rt_start=4.9, charge=2):
    """Synthetic MS1 scans one tenth of a minute apart.

    Args:
        n_scans: Number of scans
        signals: (monoisotopic mass, {scan index: intensity}, ppm offset) per analyte; each
            analyte contributes M and M+1 (half as intense) at ``charge``
        rt_start: Retention time of the first scan

    """
    scans = []
    for s in range(n_scans):
        peaks = [(BACKGROUND_MZ, 10.0)]
        for mass, profile, ppm_offset in signals:
            if s not in profile:
                continue
            observed = mass * (1 + ppm_offset / 1e6)
            for k, relative in enumerate((1.0, 0.5)):
                peaks.append((to_mz(observed + k * C13_MINUS_C12, charge), profile[s] * relative))
        peaks.sort()
        scans.append(Ms1Scan(
            s + 1,
            scan_rt(s, rt_start),
            np.array([p[0] for p in peaks]),
            np.array([p[1] for p in peaks]),
        ))
    return scans


def scan_rt(s, rt_start=4.9):
    return round(rt_start + 0.1 * s, 2)


def bump(apex_scan, intensity):
    return {apex_scan - 1: intensity / 2, apex_scan: intensity, apex_scan + 1: intensity / 2}


def ident(sequence, mass, rt, file_info, charge=2, proteins=()):
    return Identification(sequence, sequence, mass, charge, rt, file_info, protein_groups=frozenset(proteins))


def distributions(*sequences):
    return {s: list(DISTRIBUTION) for s in sequences}


@pytest.fixture
def file_a():
    return SpectraFileInfo('/data/A.mzML')


@pytest.fixture
def file_b():
    return SpectraFileInfo('/data/B.mzML')


# =============================================================================
# MS2-anchored quantification
# =============================================================================


class TestSingleFileQuantification:
    """Tests for quantifying identifications in one file."""

    @pytest.fixture
    def reader(self, file_a):
        scans = make_scans(3, [(1000.0, {0: 1000.0, 1: 2000.0, 2: 1000.0}, 0.0)])
        return InMemorySpectraReader({file_a.full_file_path: scans})

    def test_one_peak_three_envelopes(self, file_a, reader):
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)],
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()
        peaks = results.peaks[file_a]

        assert len(peaks) == 1
        peak = peaks[0]
        assert len(peak.isotopic_envelopes) == 3
        assert not peak.is_mbr_peak
        assert peak.apex.indexed_peak.retention_time == 5.0
        assert peak.intensity == pytest.approx(2000.0 * 1.5 / 2)
        assert peak.mass_error == pytest.approx(0.0, abs=1e-6)

        peptide = results.peptide_modified_sequences['PEPTIDE']
        assert peptide.get_intensity(file_a) == pytest.approx(1500.0)
        assert peptide.get_detection_type(file_a) == DetectionType.MSMS
        assert peptide.retention_times[file_a] == 5.0

    def test_integrate(self, file_a, reader):
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)],
            config=FlashLfqConfig(integrate=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        peak = engine.run().peaks[file_a][0]

        assert peak.intensity == pytest.approx((1000.0 + 2000.0 + 1000.0) * 1.5 / 2)

    def test_no_signal_identified_but_not_quantified(self, file_a, reader):
        engine = FlashLfqEngine(
            [ident('ABSENT', 1400.0, 5.0, file_a)],
            reader=reader,
            isotope_distributions=distributions('ABSENT'),
        )

        results = engine.run()

        assert len(results.peaks[file_a]) == 1
        assert results.peaks[file_a][0].isotopic_envelopes == []
        peptide = results.peptide_modified_sequences['ABSENT']
        assert peptide.get_detection_type(file_a) == DetectionType.MSMS_IDENTIFIED_BUT_NOT_QUANTIFIED

    def test_computed_isotope_distribution(self, file_a, reader):
        """Test that sequences without a supplied distribution get a theoretical one."""
        engine = FlashLfqEngine([ident('PEPTIDE', 1000.0, 5.0, file_a)], reader=reader)

        engine.run()

        distribution = engine.isotope_distributions['PEPTIDE']
        assert max(a for _, a in distribution) == pytest.approx(1.0)
        assert engine.charge_states == [2]


class TestInterferenceSplitting:
    """Tests for two co-eluting species of the same mass."""

    def test_two_anchors_partition_the_xic(self, file_a):
        profile = [10, 30, 60, 90, 100, 90, 60, 30, 20, 15, 10, 15, 50, 70, 80, 70, 50, 30, 20, 10]
        scans = make_scans(20, [(1000.0, dict(enumerate(map(float, profile))), 0.0)], rt_start=10.0)
        reader = InMemorySpectraReader({file_a.full_file_path: scans})
        identifications = [
            ident('PEPTIDE', 1000.0, scan_rt(4, 10.0), file_a),
            ident('PEPTIDE', 1000.0, scan_rt(14, 10.0), file_a),
        ]

        engine = FlashLfqEngine(identifications, reader=reader, isotope_distributions=distributions('PEPTIDE'))
        peaks = engine.run().peaks[file_a]

        assert len(peaks) == 2
        scan_sets = [
            {e.indexed_peak.zero_based_ms1_scan_index for e in p.isotopic_envelopes} for p in peaks
        ]
        assert scan_sets[0].isdisjoint(scan_sets[1])
        assert scan_sets[0] | scan_sets[1] == set(range(20))
        assert sorted(scan_sets, key=min) == [set(range(10)), set(range(10, 20))]
        assert all(p.split_rt == scan_rt(10, 10.0) for p in peaks)


class TestChargeStates:
    """Tests for the charge states searched per identification."""

    @pytest.fixture
    def reader(self, file_a):
        charge_2 = make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)], charge=2)
        charge_3 = make_scans(3, [(1000.0, bump(1, 600.0), 0.0)], charge=3)
        scans = []
        for z2, z3 in zip(charge_2, charge_3):
            mzs = np.concatenate([z2.mz_array, z3.mz_array[1:]])
            intensities = np.concatenate([z2.intensity_array, z3.intensity_array[1:]])
            order = np.argsort(mzs)
            scans.append(Ms1Scan(z2.one_based_scan_number, z2.retention_time, mzs[order], intensities[order]))
        return InMemorySpectraReader({file_a.full_file_path: scans})

    def identifications(self, file_a):
        return [ident('PEPTIDE', 1000.0, 5.0, file_a, charge=2), ident('OTHER', 1400.0, 5.0, file_a, charge=3)]

    def test_all_charge_states_searched(self, file_a, reader):
        engine = FlashLfqEngine(
            self.identifications(file_a), reader=reader, isotope_distributions=distributions('PEPTIDE', 'OTHER')
        )

        results = engine.run()
        peak = next(p for p in results.peaks[file_a] if p.identifications[0].modified_sequence == 'PEPTIDE')

        assert engine.charge_states == [2, 3]
        assert peak.num_charge_states_observed == 2
        assert peak.apex.charge_state == 2

    def test_id_specific_charge_state(self, file_a, reader):
        engine = FlashLfqEngine(
            self.identifications(file_a),
            config=FlashLfqConfig(id_specific_charge_state=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE', 'OTHER'),
        )

        results = engine.run()
        peak = next(p for p in results.peaks[file_a] if p.identifications[0].modified_sequence == 'PEPTIDE')

        assert peak.num_charge_states_observed == 1


# =============================================================================
# Error checking
# =============================================================================


class TestErrorChecking:
    """Tests for resolving peaks that share an apex."""

    def test_coeluting_sequences_merged(self, file_a):
        scans = make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)])
        reader = InMemorySpectraReader({file_a.full_file_path: scans})
        identifications = [ident('PEPTIDE', 1000.0, 5.0, file_a), ident('PEPTLDE', 1000.0, 5.0, file_a)]

        engine = FlashLfqEngine(identifications, reader=reader, isotope_distributions=distributions('PEPTIDE', 'PEPTLDE'))
        results = engine.run()

        peaks = results.peaks[file_a]
        assert len(peaks) == 1
        assert peaks[0].num_identifications_by_full_seq == 2
        for sequence in ('PEPTIDE', 'PEPTLDE'):
            peptide = results.peptide_modified_sequences[sequence]
            assert peptide.get_detection_type(file_a) == DetectionType.MSMS_AMBIGUOUS_PEAKFINDING
            assert peptide.get_intensity(file_a) == 0.0

    def test_ambiguous_quantified_when_requested(self, file_a):
        scans = make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)])
        reader = InMemorySpectraReader({file_a.full_file_path: scans})
        identifications = [ident('PEPTIDE', 1000.0, 5.0, file_a), ident('PEPTLDE', 1000.0, 5.0, file_a)]

        engine = FlashLfqEngine(
            identifications,
            config=FlashLfqConfig(quantify_ambiguous_peptides=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE', 'PEPTLDE'),
        )
        results = engine.run()

        peptide = results.peptide_modified_sequences['PEPTIDE']
        assert peptide.get_detection_type(file_a) == DetectionType.MSMS_AMBIGUOUS_PEAKFINDING
        assert peptide.get_intensity(file_a) == pytest.approx(1500.0)


class TestErrorCheckingConflicts:
    """Tests for MS2-anchored and MBR peaks over the same apex."""

    @pytest.fixture
    def engine(self, file_a):
        engine = FlashLfqEngine([], spectra_files=[file_a])
        engine._results = FlashLfqResults([file_a], [])
        return engine

    @staticmethod
    def peak(sequence, file_info, is_mbr, scan=0, mbr_score=0.0, empty=False):
        p = ChromatographicPeak(ident(sequence, 1000.0, 5.0, file_info), is_mbr, file_info)
        if not empty:
            indexed = IndexedMassSpectralPeak(to_mz(1000.0, 2), 100.0, scan, 5.0)
            p.isotopic_envelopes.append(IsotopicEnvelope(indexed, 2, 200.0))
        p.mbr_score = mbr_score
        return p

    def test_msms_beats_mbr(self, engine, file_a):
        msms = self.peak('AAA', file_a, False)
        engine._results.peaks[file_a] = [self.peak('BBB', file_a, True, mbr_score=5.0), msms]

        engine._run_error_checking(file_a)

        assert engine._results.peaks[file_a] == [msms]

    def test_higher_mbr_score_wins(self, engine, file_a):
        winner = self.peak('BBB', file_a, True, mbr_score=5.0)
        engine._results.peaks[file_a] = [self.peak('AAA', file_a, True, mbr_score=1.0), winner]

        engine._run_error_checking(file_a)

        assert engine._results.peaks[file_a] == [winner]

    def test_same_sequence_mbr_merged(self, engine, file_a):
        first = self.peak('AAA', file_a, True, mbr_score=1.0)
        engine._results.peaks[file_a] = [first, self.peak('AAA', file_a, True, mbr_score=2.0)]

        engine._run_error_checking(file_a)

        assert engine._results.peaks[file_a] == [first]
        assert len(first.identifications) == 2

    def test_empty_peaks(self, engine, file_a):
        """Test that empty MBR peaks are dropped and empty MS2-anchored peaks kept."""
        empty_msms = self.peak('AAA', file_a, False, empty=True)
        engine._results.peaks[file_a] = [empty_msms, self.peak('BBB', file_a, True, empty=True)]

        engine._run_error_checking(file_a)

        assert engine._results.peaks[file_a] == [empty_msms]

    def test_distinct_apexes_kept(self, engine, file_a):
        engine._results.peaks[file_a] = [self.peak('AAA', file_a, False, scan=0), self.peak('AAA', file_a, False, scan=1)]

        engine._run_error_checking(file_a)

        assert len(engine._results.peaks[file_a]) == 2


# =============================================================================
# Match-between-runs
# =============================================================================


class TestMatchBetweenRuns:
    """Tests for transferring identifications between files."""

    def test_transfer_into_file_without_identifications(self, file_a, file_b, tmp_path):
        reader = InMemorySpectraReader({
            file_a.full_file_path: make_scans(3, [(1000.0, {0: 1000.0, 1: 2000.0, 2: 1000.0}, 0.0)]),
            file_b.full_file_path: make_scans(3, [(1000.0, {0: 500.0, 1: 1000.0, 2: 3000.0}, 0.0)]),
        })
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)],
            spectra_files=[file_a, file_b],
            config=FlashLfqConfig(match_between_runs=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
            index_directory=tmp_path,
        )

        results = engine.run()

        assert len(results.peaks[file_a]) == 1
        assert not results.peaks[file_a][0].is_mbr_peak

        assert len(results.peaks[file_b]) == 1
        mbr_peak = results.peaks[file_b][0]
        assert mbr_peak.is_mbr_peak
        assert mbr_peak.apex.indexed_peak.retention_time == 5.1
        assert mbr_peak.rt_hypothesis == 5.0
        assert mbr_peak.mbr_score == pytest.approx(1.0 / math.sqrt(0.1 ** 2 + 1.0))

        peptide = results.peptide_modified_sequences['PEPTIDE']
        assert peptide.get_detection_type(file_b) == DetectionType.MBR
        assert peptide.get_intensity(file_b) == pytest.approx(3000.0 * 1.5 / 2)

        assert list(tmp_path.glob('*.ind')) == []

    def test_no_transfer_without_mbr(self, file_a, file_b):
        reader = InMemorySpectraReader({
            file_a.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
            file_b.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
        })
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)],
            spectra_files=[file_a, file_b],
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()

        assert results.peaks[file_b] == []
        assert results.peptide_modified_sequences['PEPTIDE'].get_detection_type(file_b) == DetectionType.NOT_DETECTED

    def test_calibrated_window(self, file_a, file_b):
        """Test that shared sequences shift and narrow the acceptor RT window."""
        # scan s elutes at 19.0 + s / 10; B runs 0.4-0.6 min later than A
        masses = {'AAA': 900.0, 'BBB': 1100.0, 'CCC': 1300.0, 'DDD': 1500.0}
        apex_a = {'AAA': 8, 'BBB': 10, 'CCC': 12, 'DDD': 10}
        apex_b = {'AAA': 12, 'BBB': 15, 'CCC': 18, 'DDD': 15}
        ppm_b = {'AAA': 2.0, 'BBB': -1.0, 'CCC': 3.0, 'DDD': 0.0}

        reader = InMemorySpectraReader({
            file_a.full_file_path: make_scans(
                26, [(masses[s], bump(apex_a[s], 1e5), 0.0) for s in masses], rt_start=19.0
            ),
            file_b.full_file_path: make_scans(
                26, [(masses[s], bump(apex_b[s], 1e5), ppm_b[s]) for s in masses], rt_start=19.0
            ),
        })
        identifications = [ident(s, masses[s], scan_rt(apex_a[s], 19.0), file_a) for s in masses]
        identifications += [ident(s, masses[s], scan_rt(apex_b[s], 19.0), file_b) for s in ('AAA', 'BBB', 'CCC')]

        engine = FlashLfqEngine(
            identifications,
            spectra_files=[file_a, file_b],
            config=FlashLfqConfig(match_between_runs=True),
            reader=reader,
            isotope_distributions=distributions(*masses),
        )
        results = engine.run()

        mbr_peaks = [p for p in results.peaks[file_b] if p.is_mbr_peak]
        assert len(mbr_peaks) == 1
        mbr_peak = mbr_peaks[0]
        assert mbr_peak.identifications[0].modified_sequence == 'DDD'
        assert mbr_peak.apex.indexed_peak.retention_time == scan_rt(15, 19.0)
        assert mbr_peak.rt_hypothesis == pytest.approx(20.5)
        assert mbr_peak.rt_std_dev == pytest.approx(0.1)
        assert mbr_peak.mbr_score > 0

        assert all(not p.is_mbr_peak for p in results.peaks[file_a])

    def test_distant_fractions_not_matched(self):
        fraction_1 = SpectraFileInfo('/data/f1.mzML', 'x', 1, 1, 1)
        fraction_2 = SpectraFileInfo('/data/f2.mzML', 'x', 1, 1, 2)
        fraction_3 = SpectraFileInfo('/data/f3.mzML', 'x', 1, 1, 3)
        reader = InMemorySpectraReader({
            fraction_1.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
            fraction_2.full_file_path: make_scans(3, []),
            fraction_3.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
        })
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, fraction_1)],
            spectra_files=[fraction_1, fraction_2, fraction_3],
            config=FlashLfqConfig(match_between_runs=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()

        assert results.peaks[fraction_3] == []

    def test_adjacent_fractions_matched(self):
        fraction_1 = SpectraFileInfo('/data/f1.mzML', 'x', 1, 1, 1)
        fraction_2 = SpectraFileInfo('/data/f2.mzML', 'x', 1, 1, 2)
        reader = InMemorySpectraReader({
            fraction_1.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
            fraction_2.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
        })
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, fraction_1)],
            spectra_files=[fraction_1, fraction_2],
            config=FlashLfqConfig(match_between_runs=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()

        assert len(results.peaks[fraction_2]) == 1
        assert results.peaks[fraction_2][0].is_mbr_peak

    @pytest.mark.parametrize('acceptor_condition, expected_peaks', [('a', 1), ('b', 0)])
    def test_require_msms_id_in_condition(self, acceptor_condition, expected_peaks):
        donor = SpectraFileInfo('/data/donor.mzML', 'a', 1)
        acceptor = SpectraFileInfo('/data/acceptor.mzML', acceptor_condition, 2)
        reader = InMemorySpectraReader({
            donor.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
            acceptor.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
        })
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, donor, proteins=['P12345'])],
            spectra_files=[donor, acceptor],
            config=FlashLfqConfig(match_between_runs=True, require_msms_id_in_condition=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()

        assert len(results.peaks[acceptor]) == expected_peaks

    def test_same_filename_in_different_directories(self, tmp_path):
        """Test that files sharing a name are restored from their own indexes."""
        first = SpectraFileInfo('/run1/sample.mzML')
        second = SpectraFileInfo('/run2/sample.mzML')
        reader = InMemorySpectraReader({
            first.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
            second.full_file_path: make_scans(5, [(1000.0, bump(3, 4000.0), 0.0)]),
        })
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, first)],
            spectra_files=[first, second],
            config=FlashLfqConfig(match_between_runs=True),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
            index_directory=tmp_path,
        )

        results = engine.run()

        assert [p.is_mbr_peak for p in results.peaks[first]] == [False]
        assert len(results.peaks[second]) == 1
        mbr_peak = results.peaks[second][0]
        assert mbr_peak.is_mbr_peak
        assert mbr_peak.apex.indexed_peak.retention_time == scan_rt(3)
        assert mbr_peak.apex.indexed_peak.intensity == pytest.approx(4000.0)
        assert list(tmp_path.glob('*.ind')) == []

    def test_donors_nominating_same_apex_accumulate(self):
        """Test that one acceptor apex found from two donors becomes one peak with both IDs."""
        file_a = SpectraFileInfo('/data/A.mzML')
        file_b = SpectraFileInfo('/data/B.mzML')
        file_c = SpectraFileInfo('/data/C.mzML')
        reader = InMemorySpectraReader({
            file_a.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)]),
            file_b.full_file_path: make_scans(4, [(1000.0, bump(2, 2000.0), 0.0)]),
            file_c.full_file_path: make_scans(3, [(1000.0, bump(1, 3000.0), 0.0)]),
        })
        ident_a = ident('PEPTIDE', 1000.0, 5.0, file_a)
        ident_b = ident('PEPTIDE', 1000.0, 5.1, file_b)
        engine = FlashLfqEngine(
            [ident_a, ident_b],
            spectra_files=[file_a, file_b, file_c],
            config=FlashLfqConfig(match_between_runs=True, max_threads=2),
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()

        assert all(not p.is_mbr_peak for p in results.peaks[file_a] + results.peaks[file_b])
        assert len(results.peaks[file_c]) == 1
        mbr_peak = results.peaks[file_c][0]
        assert mbr_peak.is_mbr_peak
        assert mbr_peak.apex.indexed_peak.retention_time == 5.0
        # donor A predicts 5.0 exactly; donor B predicts 5.1
        assert mbr_peak.mbr_score == pytest.approx(1.0 + 1.0 / math.sqrt(0.1 ** 2 + 1.0))
        assert len(mbr_peak.identifications) == 2
        assert {i.file_info for i in mbr_peak.identifications} == {file_a, file_b}
        assert results.peptide_modified_sequences['PEPTIDE'].get_detection_type(file_c) == DetectionType.MBR


class TestMbrScoring:
    """Tests for scoring and accumulating MBR hypotheses."""

    @staticmethod
    def peak(file_info, rt, intensity, is_mbr=False, sequence='PEPTIDE'):
        p = ChromatographicPeak(ident(sequence, 1000.0, rt, file_info), is_mbr, file_info)
        indexed = IndexedMassSpectralPeak(to_mz(1000.0, 2), intensity, 0, rt)
        p.isotopic_envelopes.append(IsotopicEnvelope(indexed, 2, intensity * 2))
        return p

    def test_score_with_intensity_prior(self, file_a, file_b):
        donor = self.peak(file_a, 10.0, 1000.0)
        acceptor = self.peak(file_b, 10.3, 4000.0, is_mbr=True)
        window = RtWindow(rt_hypothesis=10.0, rt_range=1.0, log2_intensity_offset=2.0)

        assert _mbr_score(donor, acceptor, window) == pytest.approx(1.0 / 0.3)

    def test_score_without_intensity_prior(self, file_a, file_b):
        donor = self.peak(file_a, 10.0, 1000.0)
        acceptor = self.peak(file_b, 10.0, 4000.0, is_mbr=True)
        window = RtWindow(rt_hypothesis=10.0, rt_range=1.0)

        assert _mbr_score(donor, acceptor, window) == pytest.approx(1.0)

    def test_perfect_hypothesis_is_finite(self, file_a, file_b):
        donor = self.peak(file_a, 10.0, 1000.0)
        acceptor = self.peak(file_b, 10.0, 1000.0, is_mbr=True)
        window = RtWindow(rt_hypothesis=10.0, rt_range=1.0, log2_intensity_offset=0.0)

        assert math.isfinite(_mbr_score(donor, acceptor, window))

    def test_hypotheses_on_same_apex_accumulate(self, file_b):
        first = self.peak(file_b, 10.0, 1000.0, is_mbr=True)
        first.mbr_score = 2.0
        second = self.peak(file_b, 10.0, 1000.0, is_mbr=True)
        second.mbr_score = 3.0
        accumulator = {}

        _add_mbr_hypothesis(accumulator, first)
        _add_mbr_hypothesis(accumulator, second)

        stored = list(accumulator['PEPTIDE'].values())
        assert stored == [first]
        assert first.mbr_score == pytest.approx(5.0)
        assert len(first.identifications) == 2

    def test_hypotheses_on_different_apexes_kept_apart(self, file_b):
        first = self.peak(file_b, 10.0, 1000.0, is_mbr=True)
        second = self.peak(file_b, 11.0, 1000.0, is_mbr=True)
        second.isotopic_envelopes[0] = IsotopicEnvelope(
            IndexedMassSpectralPeak(to_mz(1000.0, 2), 1000.0, 5, 11.0), 2, 2000.0
        )
        accumulator = {}

        _add_mbr_hypothesis(accumulator, first)
        _add_mbr_hypothesis(accumulator, second)

        assert len(accumulator['PEPTIDE']) == 2


# =============================================================================
# Engine setup, failures and threading
# =============================================================================


class TestEngineSetup:
    """Tests for engine construction and configuration."""

    def test_unknown_spectra_file_raises(self, file_a, file_b):
        with pytest.raises(ValueError, match='not being quantified'):
            FlashLfqEngine([ident('PEPTIDE', 1000.0, 5.0, file_b)], spectra_files=[file_a])

    def test_files_sorted_by_design(self):
        late = SpectraFileInfo('/data/late.mzML', 'b', 1)
        early = SpectraFileInfo('/data/early.mzML', 'a', 2)
        engine = FlashLfqEngine([], spectra_files=[late, early])

        assert engine.spectra_files == [early, late]

    def test_spectra_files_default_to_identified_files(self, file_a, file_b):
        engine = FlashLfqEngine([ident('AAA', 1000.0, 5.0, file_b), ident('BBB', 1000.0, 5.0, file_a)])
        assert set(engine.spectra_files) == {file_a, file_b}

    @pytest.mark.parametrize('kwargs', [
        {'ppm_tolerance': 0.0},
        {'isotope_ppm_tolerance': -1.0},
        {'num_isotopes_required': 0},
        {'missed_scans_allowed': -1},
        {'mbr_rt_window': 0.0},
        {'max_threads': 0},
    ])
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            FlashLfqConfig(**kwargs)

    def test_resolve_max_threads(self, monkeypatch):
        monkeypatch.setattr(engine_module.os, 'cpu_count', lambda: 8)

        assert resolve_max_threads(-1) == 7
        assert resolve_max_threads(4) == 4
        assert resolve_max_threads(64) == 7

    def test_resolve_max_threads_single_cpu(self, monkeypatch):
        monkeypatch.setattr(engine_module.os, 'cpu_count', lambda: 1)
        assert resolve_max_threads(-1) == 1

    def test_partition(self):
        assert _partition(10, 3) == [(0, 4), (4, 8), (8, 10)]
        assert _partition(2, 8) == [(0, 1), (1, 2)]
        assert _partition(5, 1) == [(0, 5)]


class TestEngineFailures:
    """Tests for unreadable files and worker errors."""

    def test_unreadable_file_skipped(self, file_a, file_b):
        reader = InMemorySpectraReader({file_a.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)])})
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)],
            spectra_files=[file_a, file_b],
            reader=reader,
            isotope_distributions=distributions('PEPTIDE'),
        )

        results = engine.run()

        assert engine.unquantified_files == [file_b]
        assert results.peaks[file_b] == []
        assert len(results.peaks[file_a]) == 1

    def test_worker_error_propagates(self, file_a, monkeypatch):
        reader = InMemorySpectraReader({file_a.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)])})

        def broken_cut_peak(*args, **kwargs):
            raise ValueError('broken')

        monkeypatch.setattr(engine_module, 'cut_peak', broken_cut_peak)
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)], reader=reader, isotope_distributions=distributions('PEPTIDE')
        )

        with pytest.raises(ValueError, match='broken'):
            engine.run()

    def test_peptide_summary_failure_wrapped(self, file_a, monkeypatch):
        reader = InMemorySpectraReader({file_a.full_file_path: make_scans(3, [(1000.0, bump(1, 2000.0), 0.0)])})

        def broken_summary(self, quantify_ambiguous_peptides=False):
            raise RuntimeError('summary failed')

        monkeypatch.setattr(FlashLfqResults, 'calculate_peptide_results', broken_summary)
        engine = FlashLfqEngine(
            [ident('PEPTIDE', 1000.0, 5.0, file_a)], reader=reader, isotope_distributions=distributions('PEPTIDE')
        )

        with pytest.raises(FlashLfqError, match='summary failed'):
            engine.run()


class TestThreading:
    """Tests that results do not depend on the number of worker threads."""

    def test_same_results_any_thread_count(self, file_a):
        masses = {f'PEPTIDE{i}': 800.0 + 97.0 * i for i in range(8)}
        signals = [(mass, bump(2 + i, 1000.0 * (i + 1)), 0.0) for i, mass in enumerate(masses.values())]
        reader = InMemorySpectraReader({file_a.full_file_path: make_scans(12, signals)})

        intensities = []
        for max_threads in (1, 4):
            identifications = [
                ident(sequence, mass, scan_rt(2 + i), file_a) for i, (sequence, mass) in enumerate(masses.items())
            ]
            engine = FlashLfqEngine(
                identifications,
                config=FlashLfqConfig(max_threads=max_threads),
                reader=reader,
                isotope_distributions=distributions(*masses),
            )
            results = engine.run()
            intensities.append([
                results.peptide_modified_sequences[s].get_intensity(file_a) for s in masses
            ])

        assert intensities[0] == intensities[1]
        assert intensities[0] == pytest.approx([1000.0 * (i + 1) * 1.5 / 2 for i in range(8)])
