"""Spectral index over the MS1 peaks of one spectra file.

Every peak is placed in a fixed-width m/z bin (100 bins per Dalton). Within a bin, peaks
are kept in MS1 scan order, so a lookup for a given scan is a binary search inside each
bin that overlaps the m/z tolerance window.

Only one file is resident at a time. An index can be written to disk and restored later
(used by match-between-runs, which revisits files after their first pass).
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq

from .chemistry import PpmTolerance, to_mass, to_mz
from .peaks import IndexedMassSpectralPeak, Ms1ScanInfo, SpectraFileInfo
from .spectra_reader import MzmlSpectraReader, SpectraReader

logger = logging.getLogger(__name__)

BINS_PER_DALTON = 100


class PeakIndexingEngine:
    """Build and query the m/z-binned peak index of a spectra file."""

    def __init__(self, reader: SpectraReader | None = None, index_directory: Path | None = None):
        self.reader = reader if reader is not None else MzmlSpectraReader()
        self.index_directory = Path(index_directory) if index_directory is not None else None
        self._index_map: list[list[IndexedMassSpectralPeak] | None] | None = None
        self._ms1_scans: dict[SpectraFileInfo, list[Ms1ScanInfo]] = {}
        self.current_file: SpectraFileInfo | None = None

    def index_mass_spectral_peaks(self, file_info: SpectraFileInfo) -> bool:
        """Read every MS1 scan of a file and bin its peaks.

        Args:
            file_info: The spectra file to index

        Returns:
            True if the file was indexed, False if it could not be read or holds no peaks

        """
        self.clear_index()

        try:
            scans = list(self.reader.read_ms1_scans(file_info.full_file_path))
        except Exception as e:
            logger.warning(f"Could not read spectra file {file_info.full_file_path}: {e}")
            return False

        if not scans:
            logger.warning(f"No MS1 scans in {file_info.full_file_path}")
            return False

        max_mz = max((float(s.mz_array.max()) for s in scans if len(s.mz_array) > 0), default=None)
        if max_mz is None:
            logger.warning(f"No peaks in {file_info.full_file_path}")
            return False

        index_map: list[list[IndexedMassSpectralPeak] | None] = [None] * (
            int(math.ceil(max_mz * BINS_PER_DALTON)) + 1
        )
        scan_infos = []

        for scan_index, scan in enumerate(scans):
            scan_infos.append(Ms1ScanInfo(scan.one_based_scan_number, scan_index, scan.retention_time))

            for mz, intensity in zip(scan.mz_array, scan.intensity_array):
                bin_index = int(round(mz * BINS_PER_DALTON))
                if index_map[bin_index] is None:
                    index_map[bin_index] = []
                index_map[bin_index].append(
                    IndexedMassSpectralPeak(float(mz), float(intensity), scan_index, scan.retention_time)
                )

        self._index_map = index_map
        self._ms1_scans[file_info] = scan_infos
        self.current_file = file_info

        n_peaks = sum(len(b) for b in index_map if b)
        logger.info(f"Indexed {n_peaks:,} peaks from {len(scans):,} MS1 scans in {file_info.filename_without_extension}")
        return True

    def get_ms1_scans(self, file_info: SpectraFileInfo) -> list[Ms1ScanInfo]:
        return self._ms1_scans[file_info]

    def get_indexed_peak(
        self,
        theoretical_mass: float,
        zero_based_scan_index: int,
        tolerance: PpmTolerance,
        charge: int,
    ) -> IndexedMassSpectralPeak | None:
        """Find the peak closest in mass to ``theoretical_mass`` at exactly one MS1 scan.

        Args:
            theoretical_mass: Neutral mass to look for
            zero_based_scan_index: MS1 scan the peak must belong to
            tolerance: Mass tolerance around ``theoretical_mass``
            charge: Charge state used to convert the mass window to m/z

        Returns:
            The matching peak, or None

        """
        if self._index_map is None:
            raise RuntimeError("Peak index has not been built")

        best_peak = None
        best_error = math.inf
        expected_mz = to_mz(theoretical_mass, charge)

        low_bin = int(math.floor(to_mz(tolerance.get_minimum_value(theoretical_mass), charge) * BINS_PER_DALTON))
        high_bin = int(math.ceil(to_mz(tolerance.get_maximum_value(theoretical_mass), charge) * BINS_PER_DALTON))
        low_bin = max(low_bin, 0)
        high_bin = min(high_bin, len(self._index_map) - 1)

        for bin_index in range(low_bin, high_bin + 1):
            bin_peaks = self._index_map[bin_index]
            if not bin_peaks:
                continue

            start = _binary_search_for_scan(bin_peaks, zero_based_scan_index)

            for j in range(start, len(bin_peaks)):
                peak = bin_peaks[j]
                if peak.zero_based_ms1_scan_index > zero_based_scan_index:
                    break

                if peak.zero_based_ms1_scan_index != zero_based_scan_index:
                    continue

                if not tolerance.within(to_mass(peak.mz, charge), theoretical_mass):
                    continue

                error = abs(peak.mz - expected_mz)
                if best_peak is None or error < best_error:
                    best_peak = peak
                    best_error = error

        return best_peak

    def clear_index(self) -> None:
        """Release the peaks of the currently loaded file."""
        self._index_map = None
        self.current_file = None

    def _index_path(self, file_info: SpectraFileInfo) -> Path:
        directory = self.index_directory or Path(file_info.full_file_path).parent
        path_hash = hashlib.sha1(file_info.full_file_path.encode()).hexdigest()[:12]
        return directory / f"{file_info.filename_without_extension}_{path_hash}.ind"

    def serialize_index(self, file_info: SpectraFileInfo) -> Path:
        """Write the loaded index to disk and release it from memory."""
        if self._index_map is None or self.current_file != file_info:
            raise RuntimeError(f"Index for {file_info.full_file_path} is not loaded")

        columns: dict[str, list] = {'bin': [], 'mz': [], 'intensity': [], 'scan_index': [], 'retention_time': []}
        for bin_index, bin_peaks in enumerate(self._index_map):
            if not bin_peaks:
                continue
            for peak in bin_peaks:
                columns['bin'].append(bin_index)
                columns['mz'].append(peak.mz)
                columns['intensity'].append(peak.intensity)
                columns['scan_index'].append(peak.zero_based_ms1_scan_index)
                columns['retention_time'].append(peak.retention_time)

        scans = [
            [s.one_based_scan_number, s.zero_based_ms1_scan_index, s.retention_time]
            for s in self._ms1_scans[file_info]
        ]
        table = pa.table({
            'bin': pa.array(columns['bin'], type=pa.int32()),
            'mz': pa.array(columns['mz'], type=pa.float64()),
            'intensity': pa.array(columns['intensity'], type=pa.float64()),
            'scan_index': pa.array(columns['scan_index'], type=pa.int32()),
            'retention_time': pa.array(columns['retention_time'], type=pa.float64()),
        })
        table = table.replace_schema_metadata({
            'n_bins': str(len(self._index_map)),
            'ms1_scans': json.dumps(scans),
        })

        path = self._index_path(file_info)
        path.parent.mkdir(parents=True, exist_ok=True)
        pq.write_table(table, path, compression='zstd')
        logger.debug(f"Wrote peak index for {file_info.filename_without_extension} to {path}")

        self.clear_index()
        return path

    def deserialize_index(self, file_info: SpectraFileInfo) -> None:
        """Load an index written by ``serialize_index`` and delete the file."""
        path = self._index_path(file_info)
        table = pq.read_table(path)
        metadata = table.schema.metadata

        index_map: list[list[IndexedMassSpectralPeak] | None] = [None] * int(metadata[b'n_bins'])
        data = table.to_pydict()
        for bin_index, mz, intensity, scan_index, rt in zip(
            data['bin'], data['mz'], data['intensity'], data['scan_index'], data['retention_time']
        ):
            if index_map[bin_index] is None:
                index_map[bin_index] = []
            index_map[bin_index].append(IndexedMassSpectralPeak(mz, intensity, scan_index, rt))

        self._index_map = index_map
        self._ms1_scans[file_info] = [
            Ms1ScanInfo(int(number), int(index), float(rt))
            for number, index, rt in json.loads(metadata[b'ms1_scans'])
        ]
        self.current_file = file_info

        path.unlink()
        logger.debug(f"Restored peak index for {file_info.filename_without_extension} from {path}")


def _binary_search_for_scan(bin_peaks: list[IndexedMassSpectralPeak], zero_based_scan_index: int) -> int:
    """Position at or before the first peak of a scan-ordered bin that belongs to the scan."""
    m = 0
    left = 0
    right = len(bin_peaks) - 1

    while left <= right:
        m = left + (right - left) // 2

        if right - left < 2:
            break
        if bin_peaks[m].zero_based_ms1_scan_index < zero_based_scan_index:
            left = m + 1
        else:
            right = m - 1

    while m > 0 and bin_peaks[m].zero_based_ms1_scan_index >= zero_based_scan_index:
        m -= 1

    return max(m, 0)
