"""
Resumable stage storage.

A stage is a named payload (any JSON/YAML-serializable object) that a run
saves once an expensive step has finished and loads on restart. Storage
problems are logged as CheckpointIOFailure and never raised: losing a
checkpoint only costs resumability.
"""

import hashlib
import json
import logging
import os
import re
from abc import abstractmethod

import yaml

from qffsmart.utils.errors import CheckpointIOFailure
from qffsmart.utils.mixins import RegistryMixin

logger = logging.getLogger(__name__)


class StageStore(RegistryMixin):
    """Base class of the checkpoint backends.

    `save_stage` returns True when the payload was stored. `load_stage`
    returns None for a stage that was never saved or cannot be read.
    """

    NAME = NotImplemented

    def __repr__(self):
        return f"{self.__class__.__qualname__}()"

    def save_stage(self, stage_id, payload):
        try:
            self._save(stage_id, payload)
        except (OSError, TypeError, ValueError, yaml.YAMLError) as e:
            error = CheckpointIOFailure(
                f"Cannot save stage {stage_id!r}: {e}"
            )
            logger.warning(str(error))
            return False
        logger.debug(f"Saved stage {stage_id!r}")
        return True

    def load_stage(self, stage_id):
        try:
            payload = self._load(stage_id)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, yaml.YAMLError) as e:
            error = CheckpointIOFailure(
                f"Cannot load stage {stage_id!r}: {e}"
            )
            logger.warning(str(error))
            return None
        if payload is not None:
            logger.info(f"Loaded stage {stage_id!r} from checkpoint")
        return payload

    @abstractmethod
    def _save(self, stage_id, payload):
        raise NotImplementedError

    @abstractmethod
    def _load(self, stage_id):
        raise NotImplementedError

    @classmethod
    def from_name(cls, name, **kwargs):
        store_cls = [s for s in cls.subclasses() if s.NAME == name.lower()]
        if not store_cls:
            raise ValueError(
                f"No checkpoint backend {name!r}. Available backends: "
                f"{[s.NAME for s in cls.subclasses()]}"
            )
        return store_cls[0](**kwargs)


class MemoryStageStore(StageStore):
    """Keeps stages in a dict; nothing survives the process."""

    NAME = "memory"

    def __init__(self):
        self._stages = {}

    def _save(self, stage_id, payload):
        # round-trip through JSON so callers never share mutable state
        self._stages[stage_id] = json.dumps(payload)

    def _load(self, stage_id):
        if stage_id not in self._stages:
            raise FileNotFoundError(stage_id)
        return json.loads(self._stages[stage_id])


class FileStageStore(StageStore):
    """One file per stage inside `folder`, written atomically."""

    SUFFIX = NotImplemented

    def __init__(self, folder="."):
        self.folder = folder

    def __repr__(self):
        return f"{self.__class__.__qualname__}<{self.folder}>"

    def path(self, stage_id):
        name = re.sub(r"[^\w.-]", "_", str(stage_id))
        return os.path.join(self.folder, f"{name}{self.SUFFIX}")

    def _save(self, stage_id, payload):
        os.makedirs(self.folder, exist_ok=True)
        path = self.path(stage_id)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            self._dump(payload, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)

    def _load(self, stage_id):
        with open(self.path(stage_id), encoding="utf-8") as f:
            return self._parse(f)

    @abstractmethod
    def _dump(self, payload, f):
        raise NotImplementedError

    @abstractmethod
    def _parse(self, f):
        raise NotImplementedError


class JSONStageStore(FileStageStore):
    NAME = "json"
    SUFFIX = ".json"

    def _dump(self, payload, f):
        json.dump(payload, f, indent=2)

    def _parse(self, f):
        return json.load(f)


class YAMLStageStore(FileStageStore):
    NAME = "yaml"
    SUFFIX = ".yaml"

    def _dump(self, payload, f):
        yaml.safe_dump(payload, f, sort_keys=False)

    def _parse(self, f):
        return yaml.safe_load(f)


def inputs_digest(geometry, charge, template, optimize):
    """SHA-256 of everything that determines a reference job's result."""
    inputs = {
        "geometry": geometry.to_dict(),
        "charge": int(charge),
        "template": template.text,
        "optimize": bool(optimize),
    }
    return hashlib.sha256(
        json.dumps(inputs, sort_keys=True).encode()
    ).hexdigest()


def optimization_records(coords, results, digests=None):
    """Checkpoint payload for a batch of reference optimizations.

    Args:
        coords (list): Outer-grid coordinates of each point.
        results (list[JobResult]): Optimization result of each point.
        digests (list[str], optional): `inputs_digest` of each point, stored
            so that a resumed run can tell whether a record is still valid.

    Returns:
        list[dict]: `{coords, energy, geometry}` records in grid order.
    """
    if digests is None:
        digests = [None] * len(coords)
    records = []
    for c, result, digest in zip(coords, results, digests):
        record = {
            "coords": [float(x) for x in c],
            "energy": float(result.energy),
            "geometry": (
                result.geometry.to_dict()
                if result.geometry is not None
                else None
            ),
        }
        if digest is not None:
            record["inputs"] = digest
        records.append(record)
    return records
