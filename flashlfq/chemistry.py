"""Mass arithmetic and theoretical isotope distributions.

Isotope distributions use the averagine approximation (Senko et al., 1995) when the
elemental composition of a sequence is unknown, and the exact composition of the base
sequence otherwise. The number of heavy +1 Da isotopes is modelled as Poisson with
biological isotope abundances from D.E. Matthews.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
from pyteomics import mass as pyteomics_mass
from pyteomics.auxiliary import PyteomicsError

PROTON_MASS = 1.007276466879
C13_MINUS_C12 = 1.00335483810

# Averagine elemental composition per residue
AVERAGINE_C = 4.9384
AVERAGINE_H = 7.7583
AVERAGINE_N = 1.3577
AVERAGINE_O = 1.4773
AVERAGINE_S = 0.0417
AVERAGINE_MASS = 111.1254

# Probabilities of the +1 Da heavy isotope of each element
P_C13 = 1.0958793 / (100.0 + 1.0958793)
P_H2 = 0.0115 / (100.0 + 0.0115)
P_N15 = 0.368351851 / (100.0 + 0.368351851)
P_O17 = 0.03799194 / (100.0 + 0.03799194)
P_S33 = 0.789308 / (100.0 + 0.789308)

MIN_ISOTOPE_ABUNDANCE = 0.1


def to_mz(mass: float, charge: int) -> float:
    """Convert a neutral monoisotopic mass to m/z at the given charge."""
    return mass / abs(charge) + math.copysign(PROTON_MASS, charge)


def to_mass(mz: float, charge: int) -> float:
    """Convert an m/z at the given charge back to a neutral mass."""
    return abs(charge) * mz - charge * PROTON_MASS


@dataclass(frozen=True)
class PpmTolerance:
    """Symmetric parts-per-million mass tolerance."""

    value: float

    def get_minimum_value(self, mass: float) -> float:
        return mass * (1 - self.value / 1e6)

    def get_maximum_value(self, mass: float) -> float:
        return mass * (1 + self.value / 1e6)

    def within(self, experimental: float, theoretical: float) -> bool:
        return abs((experimental - theoretical) / theoretical * 1e6) <= self.value


def _averagine_composition(mass: float) -> dict[str, int]:
    n_residues = mass / AVERAGINE_MASS
    return {
        'C': int(round(n_residues * AVERAGINE_C)),
        'H': int(round(n_residues * AVERAGINE_H)),
        'N': int(round(n_residues * AVERAGINE_N)),
        'O': int(round(n_residues * AVERAGINE_O)),
        'S': int(round(n_residues * AVERAGINE_S)),
    }


def elemental_composition(base_sequence: str, monoisotopic_mass: float) -> dict[str, int]:
    """Estimate the elemental composition of a (possibly modified) peptide.

    The base sequence gives the exact composition of the unmodified peptide. Any mass
    left over from modifications is filled with averagine. Sequences pyteomics cannot
    parse fall back to averagine for the whole mass.

    Args:
        base_sequence: Unmodified amino acid sequence
        monoisotopic_mass: Monoisotopic mass of the modified peptide

    Returns:
        Dict mapping element symbol to atom count

    """
    try:
        composition = pyteomics_mass.Composition(sequence=base_sequence)
    except PyteomicsError:
        return _averagine_composition(monoisotopic_mass)

    counts = {element: int(composition.get(element, 0)) for element in 'CHNOS'}
    leftover = monoisotopic_mass - pyteomics_mass.calculate_mass(composition=composition)
    if leftover > AVERAGINE_MASS / 2:
        for element, n in _averagine_composition(leftover).items():
            counts[element] += n
    return counts


def predict_isotope_distribution(composition: dict[str, int]) -> np.ndarray:
    """Predict relative isotope abundances (M, M+1, M+2, ...) normalized to max = 1.0."""
    lambda_1 = (
        composition.get('C', 0) * P_C13
        + composition.get('N', 0) * P_N15
        + composition.get('O', 0) * P_O17
        + composition.get('S', 0) * P_S33
        + composition.get('H', 0) * P_H2
    )
    n_isotopes = int(math.ceil(lambda_1 + 6 * math.sqrt(lambda_1))) + 3

    isotopes = np.zeros(n_isotopes)
    for k in range(n_isotopes):
        if lambda_1 > 0:
            isotopes[k] = math.exp(k * math.log(lambda_1) - lambda_1 - math.lgamma(k + 1))
        else:
            isotopes[k] = 1.0 if k == 0 else 0.0

    return isotopes / isotopes.max()


def theoretical_isotope_distribution(
    base_sequence: str,
    monoisotopic_mass: float,
    num_isotopes_required: int = 2,
) -> list[tuple[float, float]]:
    """Theoretical isotope envelope as (mass shift, relative abundance) pairs.

    An isotope is kept while fewer than ``num_isotopes_required`` have been kept or
    its abundance exceeds 0.1. The most abundant isotope has abundance 1.0.
    """
    abundances = predict_isotope_distribution(
        elemental_composition(base_sequence, monoisotopic_mass)
    )

    distribution = []
    for k, abundance in enumerate(abundances):
        if len(distribution) < num_isotopes_required or abundance > MIN_ISOTOPE_ABUNDANCE:
            distribution.append((k * C13_MINUS_C12, float(abundance)))
    return distribution
