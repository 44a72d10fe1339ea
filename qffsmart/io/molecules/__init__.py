"""
Molecular structures for finite-difference runs.
"""

from .structure import Atom, Molecule

__all__ = ["Atom", "Molecule"]
