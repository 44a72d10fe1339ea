import itertools
import logging
import os

from qffsmart.io.molecules.structure import REORIENT_POLICIES, Molecule
from qffsmart.utils.errors import ConfigError
from qffsmart.utils.mixins import YAMLFileMixin

logger = logging.getLogger(__name__)

DEFAULTS = {
    "charge": 0,
    "optimize": True,
    "step_size": 0.005,
    "derivative_order": 4,
    "reorient": "com",
    "use_symmetry": True,
    "symmetry_tolerance": 0.3,
    "key_decimals": 4,
    "project_symmetry": False,
    "program": "molpro",
    "template": None,
    "template_file": None,
    "queue": "pbs",
    "queue_template": None,
    "chunk_size": 128,
    "job_limit": 1024,
    "sleep_int": 5,
    "max_retries": 2,
    "job_timeout": None,
    "workers": 8,
    "work_dir": ".",
    "pts_dir": "pts",
    "opt_dir": "opt",
    "debug_dir": None,
    "checkpoint": "json",
    "delete_outputs": False,
    "grid": None,
}

REQUIRED = ("geometry",)


class ConfigFile(YAMLFileMixin):
    """A YAML run configuration on disk."""

    def __init__(self, filename):
        self.filename = filename

    def __repr__(self):
        return f"{self.__class__.__qualname__}<{self.filename}>"

    @property
    def settings(self):
        """Top-level mapping of the file, as given to QFFConfig."""
        import yaml

        if not os.path.exists(self.filename):
            raise ConfigError(
                f"Configuration file {self.filename} does not exist."
            )
        try:
            contents = self.yaml_contents_dict
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {self.filename}: {e}") from e
        if not isinstance(contents, dict):
            raise ConfigError("Configuration must be a mapping.")
        return contents

    def resolve(self, path):
        """`path` relative to the folder holding this file."""
        if path is None or os.path.isabs(path):
            return path
        return os.path.join(self.filepath_directory, path)


class QFFConfig:
    """Validated settings of one qffsmart run.

    Every key of `DEFAULTS` becomes an attribute. `geometry` is a Cartesian
    block in Angstrom (bare lines or XYZ). The optional `grid` section moves
    one probe atom over a Cartesian product of positions:

        grid:
          atom: 3          # 0-based index of the probe atom
          x: [-0.1, 0.0, 0.1]
          z: [1.5, 2.0]

    Axes that are not listed keep the probe atom's coordinate.
    """

    def __init__(self, **kwargs):
        unknown = set(kwargs) - set(DEFAULTS) - set(REQUIRED)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")
        missing = [key for key in REQUIRED if kwargs.get(key) is None]
        if missing:
            raise ConfigError(f"Missing configuration keys: {missing}")
        settings = {**DEFAULTS, **kwargs}
        for key, value in settings.items():
            setattr(self, key, value)
        self._validate()

    def __repr__(self):
        return (
            f"{self.__class__.__qualname__}<program={self.program}, "
            f"queue={self.queue}, order={self.derivative_order}>"
        )

    @classmethod
    def from_dict(cls, d):
        if not isinstance(d, dict):
            raise ConfigError("Configuration must be a mapping.")
        return cls(**d)

    @classmethod
    def from_yaml(cls, filename):
        if not filename:
            raise ConfigError("No configuration file provided.")
        config_file = ConfigFile(filename)
        config = cls.from_dict(config_file.settings)
        config.template_file = config_file.resolve(config.template_file)
        return config

    def _validate(self):
        try:
            self.charge = int(self.charge)
            self.step_size = float(self.step_size)
            self.derivative_order = int(self.derivative_order)
            self.symmetry_tolerance = float(self.symmetry_tolerance)
            self.key_decimals = int(self.key_decimals)
            self.chunk_size = int(self.chunk_size)
            self.job_limit = int(self.job_limit)
            self.sleep_int = float(self.sleep_int)
            self.max_retries = int(self.max_retries)
            self.workers = int(self.workers)
            if self.job_timeout is not None:
                self.job_timeout = float(self.job_timeout)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        if self.step_size <= 0:
            raise ConfigError(f"step_size must be positive, got {self.step_size}")
        if self.derivative_order not in (2, 3, 4):
            raise ConfigError(
                f"derivative_order must be 2, 3 or 4, got "
                f"{self.derivative_order}"
            )
        if self.reorient not in REORIENT_POLICIES:
            raise ConfigError(
                f"reorient must be one of {REORIENT_POLICIES}, got "
                f"{self.reorient!r}"
            )
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")
        if self.template is not None and self.template_file is not None:
            raise ConfigError("Give either template or template_file, not both.")
        if self.grid is not None:
            self._validate_grid()

    def _validate_grid(self):
        if not isinstance(self.grid, dict) or "atom" not in self.grid:
            raise ConfigError("grid needs an 'atom' index.")
        unknown = set(self.grid) - {"atom", "x", "y", "z"}
        if unknown:
            raise ConfigError(f"Unknown grid keys: {sorted(unknown)}")
        natoms = self.molecule.num_atoms
        atom = self.grid["atom"]
        if not isinstance(atom, int) or not 0 <= atom < natoms:
            raise ConfigError(
                f"grid atom must be an index in [0, {natoms}), got {atom!r}"
            )
        for axis in "xyz":
            values = self.grid.get(axis)
            if values is not None and (
                not isinstance(values, list) or not values
            ):
                raise ConfigError(f"grid {axis} must be a non-empty list")

    @property
    def molecule(self):
        try:
            return Molecule.from_geometry_string(
                self.geometry, charge=self.charge
            )
        except (AttributeError, KeyError, ValueError) as e:
            raise ConfigError(f"Cannot parse geometry: {e}") from e

    @property
    def template_text(self):
        if self.template_file is not None:
            try:
                with open(self.template_file) as f:
                    return f.read()
            except OSError as e:
                raise ConfigError(
                    f"Cannot read template {self.template_file}: {e}"
                ) from e
        if self.template is None and self.program == "fake":
            return "{{.geom}}\n"
        return self.template

    def make_template(self):
        from qffsmart.jobs.program import Template

        if self.template_text is None:
            raise ConfigError("No program template given.")
        return Template(self.template_text)

    def make_program(self):
        from qffsmart.jobs.program import Program

        return Program.from_name(self.program)

    def make_queue(self, program=None):
        from qffsmart.settings.scheduler import Queue

        kwargs = {
            "chunk_size": self.chunk_size,
            "job_limit": self.job_limit,
            "sleep_int": self.sleep_int,
            "template": self.queue_template,
        }
        if self.queue == "fake" and program is not None:
            kwargs["program"] = program
        return Queue.from_name(self.queue, **kwargs)

    def make_store(self):
        from qffsmart.io.checkpoint import StageStore

        if self.checkpoint == "memory":
            return StageStore.from_name("memory")
        try:
            return StageStore.from_name(self.checkpoint, folder=self.work_dir)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    @property
    def grid_points(self):
        """Probe-atom positions of the outer grid, x fastest."""
        if self.grid is None:
            return []
        atom = self.grid["atom"]
        position = self.molecule.positions[atom]
        axes = [
            [float(v) for v in self.grid.get(axis) or [position[i]]]
            for i, axis in enumerate("xyz")
        ]
        return [
            (x, y, z)
            for z, y, x in itertools.product(axes[2], axes[1], axes[0])
        ]
