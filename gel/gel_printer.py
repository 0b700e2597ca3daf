"""
Canonical text for GEL runtime values.

Used for string interpolation, `log!` messages and the result shown by hosts.
Strings print raw at the top level and quoted inside containers.
"""
import collections.abc

from gel.gel_datatypes import Closure, _UnitType
from gel.gel_errors import GelError


class Printer:
    """Formats GEL values into their canonical textual form."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def to_text(self, obj) -> str:
        """Public entry point: canonical text of a top-level value."""
        if isinstance(obj, str):
            return obj
        return self.pformat(obj)

    def pformat(self, obj) -> str:
        """Formats a value as it appears nested inside a container."""
        handler = self._get_handler(obj)
        return handler(obj)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, GelError):
            return self._pformat_error
        if isinstance(obj, collections.abc.Mapping):
            return self._pformat_dict
        if isinstance(obj, (list, tuple, range)):
            return self._pformat_list
        # Opaque capability handles
        return str

    def _create_handlers(self):
        return {
            str: self._pformat_str,
            int: self._pformat_primitive,
            bool: self._pformat_bool,
            type(None): self._pformat_none,
            _UnitType: self._pformat_unit,
            Closure: self._pformat_closure,
            dict: self._pformat_dict,
            list: self._pformat_list,
            tuple: self._pformat_list,
            range: self._pformat_list,
        }

    def _pformat_primitive(self, obj):
        return str(obj)

    def _pformat_str(self, obj):
        escaped = obj.replace('\\', '\\\\').replace('"', '\\"').replace('\n', '\\n')
        return f'"{escaped}"'

    def _pformat_bool(self, obj):
        return 'true' if obj else 'false'

    def _pformat_none(self, obj):
        return 'null'

    def _pformat_unit(self, obj):
        return '()'

    def _pformat_closure(self, obj):
        return f"<fn {obj.name}/{obj.arity}>"

    def _pformat_error(self, obj):
        return f"{obj.kind}: {obj.message}"

    def _pformat_dict(self, obj):
        items = ", ".join(f"{self._pformat_str(str(k))}: {self.pformat(v)}" for k, v in obj.items())
        return "{" + items + "}"

    def _pformat_list(self, obj):
        return "[" + ", ".join(self.pformat(v) for v in obj) + "]"
