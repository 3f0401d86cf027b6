"""Command-line interface for FlashLFQ.

Label-free quantification of MS2-identified peptides from MS1 spectra, with optional
match-between-runs.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from . import __version__
from .data_io import find_spectra_files, load_experimental_design, load_identifications
from .engine import FlashLfqConfig, FlashLfqEngine, FlashLfqError

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'tolerances': {
            'ppm': 10.0,
            'isotope_ppm': 5.0,
            'peakfinding_ppm': 20.0,
            'mbr_ppm': 10.0,
        },
        'peak_detection': {
            'num_isotopes_required': 2,
            'missed_scans_allowed': 1,
            'discrimination_factor_to_cut_peak': 0.6,
            'integrate': False,
            'id_specific_charge_state': False,
        },
        'match_between_runs': {
            'enabled': False,
            'rt_window': 2.5,
            'require_msms_id_in_condition': False,
        },
        'output': {
            'peaks_file': 'QuantifiedPeaks.tsv',
            'peptides_file': 'QuantifiedPeptides.tsv',
            'quantify_ambiguous_peptides': False,
        },
        'max_threads': -1,
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def build_engine_config(config: dict) -> FlashLfqConfig:
    """Translate the nested configuration dict into engine settings."""
    tolerances = config['tolerances']
    detection = config['peak_detection']
    mbr = config['match_between_runs']

    return FlashLfqConfig(
        ppm_tolerance=float(tolerances['ppm']),
        isotope_ppm_tolerance=float(tolerances['isotope_ppm']),
        peakfinding_ppm_tolerance=float(tolerances['peakfinding_ppm']),
        mbr_ppm_tolerance=float(tolerances['mbr_ppm']),
        num_isotopes_required=int(detection['num_isotopes_required']),
        missed_scans_allowed=int(detection['missed_scans_allowed']),
        discrimination_factor_to_cut_peak=float(detection['discrimination_factor_to_cut_peak']),
        integrate=bool(detection['integrate']),
        id_specific_charge_state=bool(detection['id_specific_charge_state']),
        match_between_runs=bool(mbr['enabled']),
        mbr_rt_window=float(mbr['rt_window']),
        require_msms_id_in_condition=bool(mbr['require_msms_id_in_condition']),
        quantify_ambiguous_peptides=bool(config['output']['quantify_ambiguous_peptides']),
        max_threads=int(config['max_threads']),
    )


def cmd_run(args: argparse.Namespace) -> int:
    """Quantify identified peptides and write the peak and peptide tables."""
    config = load_config(Path(args.config) if args.config else None)

    # Command-line flags override the configuration file
    if args.mbr:
        config['match_between_runs']['enabled'] = True
    if args.integrate:
        config['peak_detection']['integrate'] = True
    if args.threads is not None:
        config['max_threads'] = args.threads

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    try:
        engine_config = build_engine_config(config)

        spectra_dir = Path(args.spectra)
        if args.design:
            spectra_files = load_experimental_design(Path(args.design), spectra_dir)
        else:
            spectra_files = find_spectra_files(spectra_dir)
        if not spectra_files:
            raise ValueError(f"No spectra files found in {spectra_dir}")
        logger.info(f"Quantifying {len(spectra_files)} spectra files")

        identifications = load_identifications(Path(args.idt), spectra_files)
        if not identifications:
            raise ValueError(f"No identifications matched the spectra files in {args.idt}")
    except ValueError as e:
        logger.error(str(e))
        return 1

    engine = FlashLfqEngine(identifications, spectra_files=spectra_files, config=engine_config)
    try:
        results = engine.run()
    except FlashLfqError as e:
        logger.error(str(e))
        return 1

    for skipped in engine.unquantified_files:
        logger.warning(f"Not quantified: {skipped.full_file_path}")

    results.write_results(
        peaks_path=output_dir / config['output']['peaks_file'],
        peptides_path=output_dir / config['output']['peptides_file'],
    )

    with open(output_dir / 'flashlfq_config.yaml', 'w') as f:
        yaml.safe_dump(config, f, default_flow_style=False, sort_keys=False)

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='flashlfq',
        description='FlashLFQ: label-free quantification of identified peptides\n\n'
                    'Primary usage:\n'
                    '  flashlfq run --idt ids.tsv --spectra spectra_dir/ -o output_dir/',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Quantify identified peptides',
        description='Find the chromatographic peak of every identification, optionally transfer '
                    'identifications between runs, and write peak and peptide tables.'
    )
    run_parser.add_argument('--idt', required=True, help='Identification table (TSV/CSV)')
    run_parser.add_argument('--spectra', required=True, help='Directory of mzML files')
    run_parser.add_argument('--design', help='Experimental design TSV')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('--mbr', action='store_true', help='Enable match-between-runs')
    run_parser.add_argument('--integrate', action='store_true',
                            help='Sum envelope intensities instead of using the apex')
    run_parser.add_argument('--threads', type=int, help='Maximum worker threads (-1 for all but one)')

    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.command == 'run':
        return cmd_run(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
