"""Loading identification tables, experimental designs and spectra file lists."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import pandas as pd

from .peaks import Identification, SpectraFileInfo

logger = logging.getLogger(__name__)

# Identification table columns
IDENTIFICATION_REQUIRED = [
    'File Name',
    'Base Sequence',
    'Full Sequence',
    'Peptide Monoisotopic Mass',
    'Scan Retention Time',
    'Precursor Charge',
]
PROTEIN_COLUMN = 'Protein Accession'

# Alternative naming conventions
IDENTIFICATION_COLUMN_MAP = {
    'FileName': 'File Name',
    'BaseSequence': 'Base Sequence',
    'Sequence': 'Base Sequence',
    'FullSequence': 'Full Sequence',
    'Modified Sequence': 'Full Sequence',
    'ModifiedSequence': 'Full Sequence',
    'Monoisotopic Mass': 'Peptide Monoisotopic Mass',
    'Retention Time': 'Scan Retention Time',
    'RetentionTime': 'Scan Retention Time',
    'Charge': 'Precursor Charge',
    'PrecursorCharge': 'Precursor Charge',
    'Protein Accessions': 'Protein Accession',
    'ProteinAccession': 'Protein Accession',
}

DESIGN_REQUIRED = ['FileName', 'Condition', 'Biorep', 'Fraction', 'Techrep']

SPECTRA_EXTENSIONS = ['.mzml']


@dataclass
class ValidationResult:
    """Result of validating an identification table."""

    is_valid: bool
    filepath: Path
    missing_required: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    n_rows: int = 0
    n_files: int = 0

    def __str__(self) -> str:
        if self.is_valid:
            return f"Valid: {self.filepath.name} ({self.n_rows} rows, {self.n_files} files)"
        return f"Invalid: {self.filepath.name} - Missing columns: {self.missing_required}"


def _separator(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return '\t' if suffix in ['.tsv', '.txt', '.psmtsv'] else ','


def _standardize_columns(df: pd.DataFrame) -> pd.DataFrame:
    """Rename alternative column names to the standard ones."""
    rename_map = {
        orig: standard for orig, standard in IDENTIFICATION_COLUMN_MAP.items()
        if orig in df.columns and standard not in df.columns
    }
    return df.rename(columns=rename_map)


def validate_identification_table(filepath: Path) -> ValidationResult:
    """Check that an identification table has the required columns.

    Args:
        filepath: Path to the identification table (TSV or CSV)

    Returns:
        ValidationResult with validation details

    """
    filepath = Path(filepath)
    result = ValidationResult(is_valid=True, filepath=filepath)

    try:
        df = _standardize_columns(pd.read_csv(filepath, sep=_separator(filepath)))
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        result.is_valid = False
        result.warnings.append(f"Error reading file: {e}")
        return result

    result.missing_required = [c for c in IDENTIFICATION_REQUIRED if c not in df.columns]
    if result.missing_required:
        result.is_valid = False
        return result

    if PROTEIN_COLUMN not in df.columns:
        result.warnings.append("No protein accession column - peptides will have no protein groups")

    result.n_rows = len(df)
    result.n_files = df['File Name'].nunique()
    return result


def find_spectra_files(spectra_dir: Path) -> list[SpectraFileInfo]:
    """All mzML files in a directory, one sample each."""
    spectra_dir = Path(spectra_dir)
    paths = sorted(p for p in spectra_dir.iterdir() if p.suffix.lower() in SPECTRA_EXTENSIONS)
    return [SpectraFileInfo(str(p)) for p in paths]


def load_experimental_design(filepath: Path, spectra_dir: Optional[Path] = None) -> list[SpectraFileInfo]:
    """Load the experimental design (condition, replicates, fraction) of each spectra file.

    Args:
        filepath: Path to the design TSV/CSV
        spectra_dir: Directory holding the spectra files (defaults to the design's directory)

    Returns:
        One SpectraFileInfo per design row

    Raises:
        ValueError: If validation fails

    """
    filepath = Path(filepath)
    spectra_dir = Path(spectra_dir) if spectra_dir is not None else filepath.parent

    design = pd.read_csv(filepath, sep=_separator(filepath))

    missing = [col for col in DESIGN_REQUIRED if col not in design.columns]
    if missing:
        raise ValueError(f"Missing required experimental design columns: {missing}")

    duplicates = design[design['FileName'].duplicated()]['FileName'].tolist()
    if duplicates:
        raise ValueError(f"Duplicate FileName entries: {duplicates}")

    for col in ['Biorep', 'Fraction', 'Techrep']:
        design[col] = pd.to_numeric(design[col], errors='coerce')
        if design[col].isna().any():
            raise ValueError(f"{col} must be an integer")

    available = {}
    if spectra_dir.is_dir():
        available = {p.stem: p for p in spectra_dir.iterdir() if p.suffix.lower() in SPECTRA_EXTENSIONS}

    files = []
    for row in design.itertuples(index=False):
        name = Path(str(row.FileName))
        path = available.get(name.stem, spectra_dir / name)
        files.append(SpectraFileInfo(
            full_file_path=str(path),
            condition=str(row.Condition),
            biological_replicate=int(row.Biorep),
            technical_replicate=int(row.Techrep),
            fraction=int(row.Fraction),
        ))

    logger.info(f"Loaded experimental design for {len(files)} spectra files")
    return files


def load_identifications(filepath: Path, spectra_files: list[SpectraFileInfo]) -> list[Identification]:
    """Load MS2 identifications and attach each to its spectra file.

    Rows whose file is not among ``spectra_files`` are skipped with a warning.

    Args:
        filepath: Path to the identification table (TSV or CSV)
        spectra_files: Spectra files being quantified

    Returns:
        Identification records

    Raises:
        ValueError: If the table is missing required columns

    """
    filepath = Path(filepath)
    validation = validate_identification_table(filepath)
    if not validation.is_valid:
        raise ValueError(f"Invalid identification table: {validation}")
    for warning in validation.warnings:
        logger.warning(warning)

    df = _standardize_columns(pd.read_csv(filepath, sep=_separator(filepath)))
    files_by_name = {f.filename_without_extension: f for f in spectra_files}

    identifications = []
    unmatched_files = set()
    for row in df.to_dict('records'):
        file_name = Path(str(row['File Name'])).stem
        file_info = files_by_name.get(file_name)
        if file_info is None:
            unmatched_files.add(file_name)
            continue

        accessions = row.get(PROTEIN_COLUMN)
        protein_groups = frozenset()
        if isinstance(accessions, str) and accessions:
            protein_groups = frozenset(a.strip() for a in accessions.split(';') if a.strip())

        identifications.append(Identification(
            base_sequence=str(row['Base Sequence']),
            modified_sequence=str(row['Full Sequence']),
            monoisotopic_mass=float(row['Peptide Monoisotopic Mass']),
            precursor_charge=int(row['Precursor Charge']),
            ms2_retention_time=float(row['Scan Retention Time']),
            file_info=file_info,
            protein_groups=protein_groups,
        ))

    if unmatched_files:
        logger.warning(f"Skipped identifications from unknown spectra files: {sorted(unmatched_files)}")

    logger.info(f"Loaded {len(identifications):,} identifications from {filepath.name}")
    return identifications
