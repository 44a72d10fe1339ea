"""
Harmonic vibrational analysis of a Cartesian force field.
"""

import logging
import os

import numpy as np
from ase import units

logger = logging.getLogger(__name__)

# hbar * sqrt(eV / (Angstrom^2 amu)) in eV
_HNU_SCALE = units._hbar * 1e10 / np.sqrt(units._e * units._amu)


def harmonic_frequencies(molecule, fc2):
    """Harmonic wavenumbers in cm^-1 from a Cartesian Hessian.

    Args:
        molecule (Molecule): Provides the masses of the real atoms.
        fc2 (np.ndarray): (n, n) Hessian in hartree/bohr^2.

    Returns:
        np.ndarray: Vibrational wavenumbers sorted in descending order;
            imaginary modes are returned as negative numbers. The six (five
            for linear molecules) modes closest to zero are dropped.
    """
    fc2 = np.asarray(fc2, dtype=float)
    n = molecule.ncoords
    if fc2.shape != (n, n):
        raise ValueError(f"fc2 has shape {fc2.shape}, expected ({n}, {n})")
    masses = np.repeat(molecule.masses, 3)
    hessian = fc2 * units.Hartree / units.Bohr**2
    mass_weighted = hessian / np.sqrt(np.outer(masses, masses))
    eigenvalues = np.linalg.eigvalsh(mass_weighted)
    wavenumbers = (
        np.sign(eigenvalues)
        * _HNU_SCALE
        * np.sqrt(np.abs(eigenvalues))
        / units.invcm
    )

    nexternal = 5 if molecule.is_linear else 6
    nexternal = min(nexternal, n)
    by_magnitude = np.argsort(np.abs(wavenumbers))
    vibrations = wavenumbers[by_magnitude[nexternal:]]
    return np.sort(vibrations)[::-1]


def freqs(output_dir, molecule, fc2, fc3=None, fc4=None):
    """Run the harmonic analysis and write `freqs.txt` to `output_dir`.

    Only fc2 enters the harmonic analysis; fc3 and fc4 are summarized in the
    report so that the anharmonic input can be checked.

    Returns:
        tuple[str, dict]: the report text and a summary with the
            frequencies and the harmonic zero-point energy in cm^-1.
    """
    fc2 = np.asarray(fc2, dtype=float)
    lines = [
        f"Molecule: {molecule.chemical_formula}",
        f"Cartesian coordinates: {molecule.ncoords}",
    ]
    summary = {"frequencies": None, "zpe": None}
    if np.isnan(fc2).any():
        logger.warning(
            "fc2 contains NaN entries; skipping the harmonic analysis"
        )
        lines.append("Harmonic analysis skipped: fc2 is incomplete.")
    else:
        frequencies = harmonic_frequencies(molecule, fc2)
        zpe = 0.5 * float(frequencies[frequencies > 0].sum())
        summary["frequencies"] = [float(w) for w in frequencies]
        summary["zpe"] = zpe
        lines.append("Harmonic frequencies (cm-1):")
        for i, w in enumerate(frequencies, start=1):
            lines.append(f"{i:5d}{w:12.2f}")
        lines.append(f"Harmonic ZPE (cm-1): {zpe:.2f}")
    for name, tensor in (("fc3", fc3), ("fc4", fc4)):
        if tensor is not None and np.size(tensor):
            tensor = np.asarray(tensor)
            lines.append(
                f"{name}: {tensor.size} entries, "
                f"{int(np.isnan(tensor).sum())} missing, "
                f"max |value| {np.nanmax(np.abs(tensor)):.6e}"
            )
    report = "\n".join(lines) + "\n"

    if output_dir is not None:
        os.makedirs(output_dir, exist_ok=True)
        with open(os.path.join(output_dir, "freqs.txt"), "w") as f:
            f.write(report)
    return report, summary
