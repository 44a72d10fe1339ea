import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    """Parsed output of one external job.

    Attributes:
        energy (float): Energy in hartree.
        geometry (Molecule, optional): Optimized geometry, for optimizations.
        time (float): Elapsed wall time reported by the program, in seconds.
    """

    energy: float
    geometry: Optional[object] = None
    time: float = 0.0

    def to_dict(self):
        return {
            "energy": self.energy,
            "geometry": (
                self.geometry.to_dict() if self.geometry is not None else None
            ),
            "time": self.time,
        }

    @classmethod
    def from_dict(cls, d):
        from qffsmart.io.molecules.structure import Molecule

        geometry = d.get("geometry")
        return cls(
            energy=d["energy"],
            geometry=Molecule.from_dict(geometry) if geometry else None,
            time=d.get("time", 0.0),
        )


class Job:
    """Descriptor of one external-program invocation.

    Args:
        basename (str): Path of the job files without suffix; the program
            adapter appends its input and output suffixes. Stored as an
            absolute path, since chunk scripts run from the job folder.
        template (Template): Program input template.
        charge (int): Molecular charge.
        geometry (Molecule): Geometry to compute.
        id (int): Position of the job's result in the results array; equal
            to the id of the target the geometry represents.
        optimize (bool): Run a geometry optimization instead of a single
            point.
    """

    def __init__(
        self, basename, template, charge, geometry, id, optimize=False
    ):
        self.basename = os.path.abspath(basename)
        self.template = template
        self.charge = charge
        self.geometry = geometry
        self.id = id
        self.optimize = optimize

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<id={self.id}, "
            f"basename={self.basename}, optimize={self.optimize}>"
        )

    @property
    def label(self):
        return os.path.basename(self.basename)

    @classmethod
    def from_geometries(
        cls,
        folder,
        geometries,
        template,
        charge,
        optimize=False,
        prefix="job",
        start=0,
    ):
        """One job per geometry with ids `start, start + 1, ...`."""
        return [
            cls(
                basename=os.path.join(folder, f"{prefix}.{i:08d}"),
                template=template,
                charge=charge,
                geometry=geometry,
                id=i,
                optimize=optimize,
            )
            for i, geometry in enumerate(geometries, start=start)
        ]
