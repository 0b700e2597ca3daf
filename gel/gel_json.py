"""
Default JSON resource store: `json! name` loads `<root>/<name>.json`
(or `.yaml` / `.yml`).
"""
import logging
from pathlib import Path
from typing import Any, Dict, Union

from gel.gel_ports import JsonPort
from gel.gel_serialize import deserialize

logger = logging.getLogger(__name__)

EXTENSIONS = {'.json': 'json', '.yaml': 'yaml', '.yml': 'yaml'}


class JsonStore(JsonPort):
    """Decodes named resource files under a root directory, caching each one."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self._cache: Dict[str, Any] = {}

    def _find(self, name: str) -> Path:
        for ext in EXTENSIONS:
            path = self.root / f"{name}{ext}"
            if path.is_file():
                return path
        raise FileNotFoundError(f"no resource named '{name}' under {self.root}")

    def load(self, name: str) -> Any:
        if name in self._cache:
            return self._cache[name]
        path = self._find(name)
        logger.debug("json %s <- %s", name, path)
        value = deserialize(path.read_bytes(), fmt=EXTENSIONS[path.suffix], strict=True)
        self._cache[name] = value
        return value
