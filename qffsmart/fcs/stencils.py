"""
Displacement signatures and central finite-difference stencils.

A displacement signature is a sorted tuple of `(coordinate, steps)` pairs
with nonzero integer steps; the empty tuple is the reference geometry.

Every force-constant entry with sorted indices is the product of
one-dimensional central-difference stencils, one per distinct coordinate,
where a coordinate appearing `m` times contributes the m-th derivative
stencil on a grid of spacing `2 * step`. The denominator of an order-k
entry is therefore always `(2 * step) ** k`: 4d^2 for fc2, 8d^3 for fc3 and
16d^4 for fc4.
"""

import itertools
import logging
from collections import Counter
from dataclasses import dataclass
from math import comb

import numpy as np

logger = logging.getLogger(__name__)

REFERENCE = ()

# steps -> coefficient for the m-th derivative on a grid of spacing 2*step
DERIVATIVE_STENCILS = {
    1: {1: 1.0, -1: -1.0},
    2: {2: 1.0, 0: -2.0, -2: 1.0},
    3: {3: 1.0, 1: -3.0, -1: 3.0, -3: -1.0},
    4: {4: 1.0, 2: -4.0, 0: 6.0, -2: -4.0, -4: 1.0},
}


def signature(*pairs):
    """Build a normalized displacement signature.

    Steps on the same coordinate are summed and zero steps are dropped.

    >>> signature((3, 1), (0, -2), (3, 1))
    ((0, -2), (3, 2))
    """
    steps = Counter()
    for coord, step in pairs:
        steps[int(coord)] += int(step)
    return tuple(
        (coord, step) for coord, step in sorted(steps.items()) if step != 0
    )


def signature_vector(sig, ncoords):
    """Flat array of step counts for a signature."""
    vector = np.zeros(ncoords)
    for coord, step in sig:
        vector[coord] = step
    return vector


def nfc2(n):
    return n * n


def nfc3(n):
    return n * (n + 1) * (n + 2) // 6


def nfc4(n):
    return n * (n + 1) * (n + 2) * (n + 3) // 24


def fc2_index(n, i, j):
    return i * n + j


def fc3_index(i, j, k):
    """Packed index of a third-order entry; any index order is accepted."""
    i, j, k = sorted((i, j, k))
    return comb(k + 2, 3) + comb(j + 1, 2) + i


def fc4_index(i, j, k, l):  # noqa: E741
    """Packed index of a fourth-order entry; any index order is accepted."""
    i, j, k, l = sorted((i, j, k, l))  # noqa: E741
    return comb(l + 3, 4) + comb(k + 2, 3) + comb(j + 1, 2) + i


@dataclass(frozen=True)
class StencilEntry:
    """One force-constant entry and the energies it is built from.

    Attributes:
        indices (tuple[int]): Sorted coordinate indices of the entry.
        terms (tuple): `(coefficient, signature)` pairs.
    """

    indices: tuple
    terms: tuple

    @property
    def order(self):
        return len(self.indices)

    def flat_index(self, n):
        if self.order == 2:
            return fc2_index(n, *self.indices)
        if self.order == 3:
            return fc3_index(*self.indices)
        return fc4_index(*self.indices)

    def denominator(self, step_size):
        return (2.0 * step_size) ** self.order

    @property
    def signatures(self):
        return [sig for _, sig in self.terms]


def stencil(indices):
    """Build the stencil entry for a tuple of coordinate indices."""
    indices = tuple(sorted(int(i) for i in indices))
    multiplicities = sorted(Counter(indices).items())
    factors = []
    for coord, m in multiplicities:
        if m not in DERIVATIVE_STENCILS:
            raise ValueError(f"No stencil for a derivative of order {m}")
        factors.append(
            [
                (coeff, (coord, step))
                for step, coeff in DERIVATIVE_STENCILS[m].items()
            ]
        )
    terms = {}
    for combination in itertools.product(*factors):
        coeff = 1.0
        pairs = []
        for factor_coeff, pair in combination:
            coeff *= factor_coeff
            pairs.append(pair)
        sig = signature(*pairs)
        terms[sig] = terms.get(sig, 0.0) + coeff
    return StencilEntry(
        indices=indices,
        terms=tuple((coeff, sig) for sig, coeff in terms.items() if coeff),
    )


def enumerate_entries(n, derivative_order):
    """All stencil entries needed up to `derivative_order`.

    Entries come in a fixed order: fc2 entries with i <= j, then fc3 and fc4
    entries over sorted index tuples.
    """
    if derivative_order not in (2, 3, 4):
        raise ValueError(
            f"derivative_order must be 2, 3 or 4, got {derivative_order}"
        )
    entries = []
    for order in range(2, derivative_order + 1):
        for indices in itertools.combinations_with_replacement(
            range(n), order
        ):
            entries.append(stencil(indices))
    logger.debug(
        f"Enumerated {len(entries)} stencil entries for n={n} up to "
        f"order {derivative_order}"
    )
    return entries


def required_signatures(entries):
    """Distinct non-reference signatures of `entries`, in first-use order."""
    seen = {}
    for entry in entries:
        for sig in entry.signatures:
            if sig != REFERENCE and sig not in seen:
                seen[sig] = None
    return list(seen)
