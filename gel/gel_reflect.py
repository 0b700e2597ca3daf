"""
Default reflective bridge: resolves dotted class and member paths against
importable Python modules.
"""
import importlib
import logging
from typing import Any, List, Optional, Sequence, Tuple

from gel.gel_datatypes import UNIT
from gel.gel_ports import ReflectPort

logger = logging.getLogger(__name__)


class PythonBridge(ReflectPort):
    """
    `new! A args` and `static! A.member args` for Python objects.

    A path such as `collections.OrderedDict` is split at the longest importable
    module prefix; the rest is read with getattr. When `allowed_prefixes` is
    given, only paths under one of them may be resolved.
    """

    def __init__(self, allowed_prefixes: Optional[Sequence[str]] = None):
        self.allowed_prefixes = tuple(allowed_prefixes) if allowed_prefixes is not None else None

    def _check_allowed(self, path: str):
        if self.allowed_prefixes is None:
            return
        for prefix in self.allowed_prefixes:
            if path == prefix or path.startswith(prefix.rstrip('.') + '.'):
                return
        raise PermissionError(f"'{path}' is not in the allowed reflection prefixes")

    def resolve(self, path: str) -> Any:
        self._check_allowed(path)
        parts = path.split('.')
        module, rest = self._import_prefix(parts)
        obj = module
        for name in rest:
            if name.startswith('_'):
                raise AttributeError(f"'{path}': private member '{name}' is not accessible")
            obj = getattr(obj, name)
        return obj

    def _import_prefix(self, parts: List[str]) -> Tuple[Any, List[str]]:
        for i in range(len(parts), 0, -1):
            name = '.'.join(parts[:i])
            try:
                return importlib.import_module(name), parts[i:]
            except ModuleNotFoundError as e:
                # Only a missing prefix means "try a shorter one"; errors inside the module propagate.
                if e.name is None or not name.startswith(e.name):
                    raise
        raise ModuleNotFoundError(f"no importable module in '{'.'.join(parts)}'")

    @staticmethod
    def _args(args: List[Any]) -> List[Any]:
        if len(args) == 1 and args[0] is UNIT:
            return []
        return list(args)

    def new(self, class_path: str, args: List[Any]) -> Any:
        cls = self.resolve(class_path)
        if not isinstance(cls, type):
            raise TypeError(f"'{class_path}' is not a class")
        logger.debug("new %s %r", class_path, args)
        return cls(*self._args(args))

    def static(self, member_path: str, args: List[Any]) -> Any:
        member = self.resolve(member_path)
        if not args:
            return member
        if not callable(member):
            raise TypeError(f"'{member_path}' is not callable")
        logger.debug("static %s %r", member_path, args)
        return member(*self._args(args))
