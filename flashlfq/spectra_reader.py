"""Readers that supply MS1 scans to the spectral index.

Supported sources:
- mzML files, read with pyteomics
- In-memory scans (pre-parsed arrays, synthetic data)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from pyteomics import mzml

logger = logging.getLogger(__name__)


@dataclass
class Ms1Scan:
    """One MS1 scan: centroided m/z and intensity arrays plus its position in the run."""

    one_based_scan_number: int
    retention_time: float
    mz_array: np.ndarray
    intensity_array: np.ndarray


class SpectraReader(ABC):
    """Abstract base class for MS1 scan sources."""

    @abstractmethod
    def read_ms1_scans(self, file_path: str) -> Iterator[Ms1Scan]:
        """Yield the MS1 scans of a file in acquisition order.

        Raises:
            OSError: If the file cannot be opened
            ValueError: If the file cannot be parsed

        """
        pass


class MzmlSpectraReader(SpectraReader):
    """Read MS1 scans from mzML files."""

    def read_ms1_scans(self, file_path: str) -> Iterator[Ms1Scan]:
        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"Spectra file not found: {path}")

        with mzml.read(str(path)) as reader:
            for spectrum in reader:
                if spectrum.get('ms level') != 1:
                    continue

                scan = spectrum['scanList']['scan'][0]
                yield Ms1Scan(
                    one_based_scan_number=int(spectrum['index']) + 1,
                    retention_time=float(scan['scan start time']),
                    mz_array=np.asarray(spectrum['m/z array'], dtype=float),
                    intensity_array=np.asarray(spectrum['intensity array'], dtype=float),
                )


class InMemorySpectraReader(SpectraReader):
    """Serve scans that are already held in memory, keyed by file path."""

    def __init__(self, scans_by_file: dict[str, list[Ms1Scan]]):
        self.scans_by_file = scans_by_file

    def read_ms1_scans(self, file_path: str) -> Iterator[Ms1Scan]:
        if file_path not in self.scans_by_file:
            raise FileNotFoundError(f"No scans loaded for {file_path}")
        yield from self.scans_by_file[file_path]
