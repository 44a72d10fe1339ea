from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from qffsmart.fcs.points import ForceConstantBuffer, build_points
from qffsmart.fcs.stencils import (
    DERIVATIVE_STENCILS,
    REFERENCE,
    enumerate_entries,
    fc3_index,
    fc4_index,
    nfc3,
    nfc4,
    required_signatures,
    signature,
    stencil,
)
from qffsmart.symmetry.registry import TargetRegistry


def _orbits(signatures, operations):
    """Explicit orbit enumeration with hand-written diagonal operations."""
    orbits = set()
    for sig in signatures:
        images = []
        for op in operations:
            signs = np.round(np.diag(op.rotation)).astype(int)
            pairs = []
            for coord, steps in sig:
                atom, axis = divmod(coord, 3)
                pairs.append(
                    (3 * op.permutation[atom] + axis, steps * signs[axis])
                )
            images.append(signature(*pairs))
        orbits.add(frozenset(images))
    return orbits


class TestStencils:
    def test_signature_normalization(self):
        assert signature((3, 1), (0, -2), (3, 1)) == ((0, -2), (3, 2))
        assert signature((1, 1), (1, -1)) == REFERENCE

    def test_packed_indices_are_dense(self):
        n = 5
        fc3 = sorted(
            fc3_index(i, j, k)
            for i in range(n)
            for j in range(i, n)
            for k in range(j, n)
        )
        assert fc3 == list(range(nfc3(n)))
        fc4 = {
            fc4_index(i, j, k, l)
            for i in range(n)
            for j in range(i, n)
            for k in range(j, n)
            for l in range(k, n)  # noqa: E741
        }
        assert fc4 == set(range(nfc4(n)))

    def test_packed_index_ignores_order(self):
        assert fc3_index(2, 0, 1) == fc3_index(0, 1, 2)
        assert fc4_index(3, 1, 3, 0) == fc4_index(0, 1, 3, 3)

    def test_diagonal_second_derivative(self):
        entry = stencil((4, 4))
        assert dict((sig, c) for c, sig in entry.terms) == {
            ((4, 2),): 1.0,
            REFERENCE: -2.0,
            ((4, -2),): 1.0,
        }
        assert entry.denominator(0.005) == pytest.approx(4 * 0.005**2)

    def test_off_diagonal_second_derivative(self):
        entry = stencil((1, 0))
        assert entry.indices == (0, 1)
        terms = dict((sig, c) for c, sig in entry.terms)
        assert terms == {
            ((0, 1), (1, 1)): 1.0,
            ((0, -1), (1, 1)): -1.0,
            ((0, 1), (1, -1)): -1.0,
            ((0, -1), (1, -1)): 1.0,
        }

    def test_stencils_differentiate_monomials(self):
        # the m-th derivative of x**m is m!
        for m, coefficients in DERIVATIVE_STENCILS.items():
            h = 0.1
            value = sum(c * (s * h) ** m for s, c in coefficients.items())
            assert value / (2 * h) ** m == pytest.approx(np.prod(range(1, m + 1)))

    def test_entry_counts(self):
        n = 6
        assert len(enumerate_entries(n, 2)) == n * (n + 1) // 2
        assert len(enumerate_entries(n, 3)) == n * (n + 1) // 2 + nfc3(n)
        assert len(enumerate_entries(n, 4)) == (
            n * (n + 1) // 2 + nfc3(n) + nfc4(n)
        )

    def test_invalid_order(self):
        with pytest.raises(ValueError):
            enumerate_entries(3, 5)


class TestBuildPoints:
    def _build(self, molecule, order, point_group=None, executor=None):
        n = molecule.ncoords
        registry = TargetRegistry(molecule, 0.005, point_group=point_group)
        fc_buffer = ForceConstantBuffer(n, order)
        geometries = build_points(
            molecule, 0.005, -1.0, order, fc_buffer, registry, executor
        )
        return geometries, registry, fc_buffer

    def test_harmonic_without_symmetry(self, asymmetric_triatomic):
        trivial = asymmetric_triatomic.point_group(use_symmetry=False)
        geometries, registry, fc_buffer = self._build(
            asymmetric_triatomic, 2, point_group=trivial
        )
        n = 9
        # 2 per diagonal entry and 4 per off-diagonal pair
        assert registry.num_signatures == 2 * n**2
        assert len(geometries) == 2 * n**2
        assert len(registry) == registry.num_signatures
        for target in registry.targets:
            assert target.members == {target.signature}
        assert fc_buffer.fc2.size == n**2
        assert fc_buffer.ref_energy == -1.0

    def test_molecular_plane_reduces_points(self, asymmetric_triatomic):
        geometries, registry, _ = self._build(asymmetric_triatomic, 2)
        assert registry.point_group.symbol == "Cs"
        assert len(geometries) < registry.num_signatures

    def test_water_collapses_to_orbits(self, water, c2v_operations):
        geometries, registry, _ = self._build(water, 2)
        signatures = list(registry.signature_map)
        signatures.remove(REFERENCE)
        orbits = _orbits(signatures, c2v_operations)
        assert len(geometries) == len(orbits)
        assert len(registry) < registry.num_signatures
        # every orbit maps onto exactly one target
        signature_map = registry.signature_map
        for orbit in orbits:
            assert len({signature_map[sig] for sig in orbit}) == 1

    def test_cubic_orbits(self, water, c2v_operations):
        geometries, registry, _ = self._build(water, 3)
        signatures = [s for s in registry.signature_map if s != REFERENCE]
        assert len(geometries) == len(_orbits(signatures, c2v_operations))

    def test_ids_reproducible_with_executor(self, water):
        sequential, registry, _ = self._build(water, 3)
        with ThreadPoolExecutor(max_workers=4) as executor:
            parallel, parallel_registry, _ = self._build(
                water, 3, executor=executor
            )
        assert registry.signature_map == parallel_registry.signature_map
        for a, b in zip(sequential, parallel):
            assert np.allclose(a.positions, b.positions)

    def test_reference_is_never_a_target(self, water):
        geometries, registry, _ = self._build(water, 4)
        assert all(t.signature != REFERENCE for t in registry.targets)
        for geometry in geometries:
            assert not np.allclose(geometry.positions, water.positions)

    def test_required_signatures_cover_registry(self, water):
        _, registry, fc_buffer = self._build(water, 4)
        required = set(required_signatures(fc_buffer.entries))
        assert required == set(registry.signature_map) - {REFERENCE}

    def test_dummy_atoms_are_not_displaced(self, water_with_dummy):
        geometries, _, fc_buffer = self._build(water_with_dummy, 2)
        assert fc_buffer.n == 9
        for geometry in geometries:
            assert np.allclose(geometry.positions[3], [0.0, 0.0, 2.0])

    def test_buffer_size_mismatch(self, water):
        registry = TargetRegistry(water, 0.005)
        with pytest.raises(ValueError):
            build_points(
                water, 0.005, 0.0, 2, ForceConstantBuffer(6, 2), registry
            )

    def test_order_exceeds_buffer(self, water):
        registry = TargetRegistry(water, 0.005)
        with pytest.raises(ValueError):
            build_points(
                water, 0.005, 0.0, 4, ForceConstantBuffer(9, 2), registry
            )
