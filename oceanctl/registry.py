"""JSON file registry holding one Cluster aggregate per file."""
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Union

from oceanctl.modules.errors import ClusterConflictError, ClusterNotFound, ValidationError
from oceanctl.modules.models import Cluster

logger = logging.getLogger("oceanctl.registry")

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class ClusterRegistry:
    """Cluster persistence with an optimistic version check.

    ``save`` only succeeds when the caller's ``version`` matches the stored
    one, and bumps it; ``save_logs`` rewrites the log text alone so log
    flushes never conflict with a concurrent save.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()
        self._lock = threading.RLock()

    def _path(self, name: str) -> Path:
        if not NAME_PATTERN.match(name or ""):
            raise ValidationError(f"invalid cluster name: {name!r}")
        return self.root / f"{name}.json"

    def _read(self, name: str) -> Dict[str, Any]:
        path = self._path(name)
        if not path.exists():
            raise ClusterNotFound(f"cluster {name} not found")
        with open(path, "r") as f:
            return json.load(f)

    def _write(self, name: str, data: Dict[str, Any]) -> None:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def get(self, name: str) -> Cluster:
        with self._lock:
            return Cluster.from_dict(self._read(name))

    def list(self) -> List[Cluster]:
        with self._lock:
            if not self.root.exists():
                return []
            return [self.get(p.stem) for p in sorted(self.root.glob("*.json"))]

    def save(self, cluster: Cluster) -> Cluster:
        """Persist the whole aggregate.

        Raises:
            ClusterConflictError: If the stored version moved on since
                ``cluster`` was read
        """
        with self._lock:
            if self.exists(cluster.name):
                stored = self._read(cluster.name).get("version", 0)
                if stored != cluster.version:
                    raise ClusterConflictError(
                        f"cluster {cluster.name} was modified concurrently "
                        f"(stored version {stored}, saving version {cluster.version})"
                    )
            elif cluster.version != 0:
                raise ClusterConflictError(f"cluster {cluster.name} was deleted concurrently")
            cluster.version += 1
            try:
                self._write(cluster.name, cluster.to_dict())
            except OSError:
                cluster.version -= 1
                raise
            logger.debug(f"Saved cluster {cluster.name} at version {cluster.version}")
            return cluster

    def save_logs(self, name: str, logs: str) -> None:
        with self._lock:
            data = self._read(name)
            data["logs"] = logs
            self._write(name, data)

    def delete(self, name: str) -> None:
        with self._lock:
            path = self._path(name)
            if not path.exists():
                raise ClusterNotFound(f"cluster {name} not found")
            path.unlink()
            logger.info(f"Deleted cluster {name} from the registry")


def get_registry(settings) -> ClusterRegistry:
    return ClusterRegistry(settings.resource.clusters_dir)
