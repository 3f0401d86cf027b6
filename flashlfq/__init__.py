"""
FlashLFQ: label-free quantification of LC-MS proteomics data

Quantifies peptides identified by an external search engine from their MS1 isotope
envelopes, with match-between-runs to recover peptides identified in only some runs.
"""

__version__ = "0.1.0"

from .chemistry import (
    C13_MINUS_C12,
    PROTON_MASS,
    PpmTolerance,
    theoretical_isotope_distribution,
    to_mass,
    to_mz,
)
from .peaks import (
    ChromatographicPeak,
    Identification,
    IndexedMassSpectralPeak,
    IsotopicEnvelope,
    Ms1ScanInfo,
    RetentionTimeCalibDataPoint,
    SpectraFileInfo,
)
from .spectra_reader import (
    InMemorySpectraReader,
    Ms1Scan,
    MzmlSpectraReader,
    SpectraReader,
)
from .indexing import PeakIndexingEngine
from .isotopes import IsotopeEnvelopeMatcher
from .peak_detection import cut_peak, peakfind
from .engine import (
    FlashLfqConfig,
    FlashLfqEngine,
    FlashLfqError,
)
from .results import (
    DetectionType,
    FlashLfqResults,
    Peptide,
)
from .data_io import (
    load_experimental_design,
    load_identifications,
)
