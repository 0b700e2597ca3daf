"""
Script execution for GEL: the ScriptRunner, its result type, the standard
builtins and configuration loading.
"""
import collections.abc
import functools
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Union

import yaml

from gel.gel_datatypes import Program, Scope, kind_of, values_equal
from gel.gel_errors import GelError, GelSyntaxError, GelTypeError, InternalError
from gel.gel_http import HttpxInvoker
from gel.gel_interpreter import Evaluator
from gel.gel_json import JsonStore
from gel.gel_parser import parse
from gel.gel_ports import Ports
from gel.gel_query import SqliteQueryExecutor
from gel.gel_reflect import PythonBridge
from gel.gel_soap import SoapInvoker
from gel.gel_transformer import GelTransformer

Token = Dict[str, Any]

PARSE_CACHE_SIZE = 256

LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'ERROR': logging.ERROR,
}


# ===================================================================
# 1. Builtins
# ===================================================================

class StdLib:
    """Python implementations of the builtins bound in every root scope.

    Each `_name` method is exposed to scripts as `name`.
    """
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator

    def bind_into(self, scope: Scope):
        for name, member in inspect.getmembers(self):
            if name.startswith('_') and not name.startswith('__') and callable(member):
                scope.bind(name[1:], member)

    def _len(self, collection):
        if isinstance(collection, (str, list, tuple, range, collections.abc.Mapping)):
            return len(collection)
        raise GelTypeError(f"len expects a string, list or dict, got {kind_of(collection)}")

    def _str(self, value):
        return self.evaluator.printer.to_text(value)

    def _keys(self, d):
        if not isinstance(d, collections.abc.Mapping):
            raise GelTypeError(f"keys expects a dict, got {kind_of(d)}")
        return list(d.keys())

    def _values(self, d):
        if not isinstance(d, collections.abc.Mapping):
            raise GelTypeError(f"values expects a dict, got {kind_of(d)}")
        return list(d.values())

    def _get(self, container, key):
        """Dict key or list index lookup; missing entries give null."""
        if isinstance(container, collections.abc.Mapping):
            return container.get(key)
        if isinstance(container, (list, tuple, range)):
            if kind_of(key) != "number":
                raise GelTypeError(f"list index must be a number, got {kind_of(key)}")
            return container[key] if -len(container) <= key < len(container) else None
        raise GelTypeError(f"get expects a dict or list, got {kind_of(container)}")

    def _contains(self, container, item):
        if isinstance(container, collections.abc.Mapping):
            return item in container if isinstance(item, str) else False
        if isinstance(container, str):
            if not isinstance(item, str):
                raise GelTypeError(f"contains on a string expects a string, got {kind_of(item)}")
            return item in container
        if isinstance(container, (list, tuple, range)):
            return any(values_equal(x, item) for x in container)
        raise GelTypeError(f"contains expects a dict, list or string, got {kind_of(container)}")

    def _format(self, template, bindings):
        """Renders `{expr}` placeholders in a string using the names in `bindings`."""
        if not isinstance(template, str):
            raise GelTypeError(f"format expects a string template, got {kind_of(template)}")
        if not isinstance(bindings, collections.abc.Mapping):
            raise GelTypeError(f"format expects a dict of bindings, got {kind_of(bindings)}")
        scope = Scope()
        for name, value in bindings.items():
            scope.bind(str(name), value)
        try:
            return self.evaluator.interpolator.interpolate(template, scope)
        except GelSyntaxError as e:
            raise GelTypeError(f"format: {e.message}") from e


# ===================================================================
# 2. Logging and configuration
# ===================================================================

def logging_sink(logger: logging.Logger) -> Callable[[dict], None]:
    """Adapts a stdlib logger as a `log!` sink."""
    def sink(event: dict):
        logger.log(LOG_LEVELS.get(event.get('level'), logging.INFO), event.get('message'))
    return sink


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Reads a YAML (or JSON) config file with http/soap/datasources/json_root/reflect sections."""
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} must contain a mapping, not {type(data).__name__}")
    return data


def build_ports(config: Dict[str, Any], base_dir: Optional[Union[str, Path]] = None) -> Ports:
    """Builds the default ports from a config mapping.

    Relative datasource paths and `json_root` resolve against `base_dir`.
    The reflective bridge is only enabled when a `reflect` section is present.
    """
    base = Path(base_dir) if base_dir is not None else None

    def resolve(p):
        p = Path(p)
        if base is not None and not p.is_absolute() and str(p) != ':memory:':
            return base / p
        return p

    ports = Ports(
        http=HttpxInvoker(config.get('http') or {}),
        soap=SoapInvoker(config.get('soap') or {}),
    )
    if config.get('datasources'):
        ports.query = SqliteQueryExecutor({name: resolve(p) for name, p in config['datasources'].items()})
    if config.get('json_root') is not None:
        ports.json = JsonStore(resolve(config['json_root']))
    if 'reflect' in config:
        reflect_cfg = config.get('reflect') or {}
        ports.reflect = PythonBridge(allowed_prefixes=reflect_cfg.get('allowed_prefixes'))
    return ports


# ===================================================================
# 3. Script Execution
# ===================================================================

@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error: Optional[GelError] = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)
    source: Optional[str] = field(default=None, repr=False)

    def format_error(self) -> str:
        """Formats the error with its line, column and a source excerpt."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if not self.error_token or self.error_token.get('line') is None:
            return msg
        line = self.error_token.get('line')
        col = self.error_token.get('col')
        col_info = f", col {col}" if col is not None else ""
        out = f"{msg} (line {line}{col_info})"
        context = source_context(self.source or "", line, col)
        if context:
            out = f"{out}\n{context}"
        return out


def source_context(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines()
    if not line or line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
        if i == line and col is not None:
            out.append(f"  {' ' * width} | {' ' * max(col - 1, 0)}^")
    return "\n".join(out)


class ScriptRunner:
    """Parses, transforms, and executes GEL scripts.

    Each run gets its own Evaluator, root scope, alias table and side-effect
    list. The most recently parsed programs are cached by source text, up to
    `cache_size` of them.
    """

    def __init__(self, ports: Optional[Ports] = None, log_sink: Optional[Callable[[dict], Any]] = None,
                 builtins: Optional[Dict[str, Callable]] = None, sql_dialect: str = "generic",
                 cache_size: int = PARSE_CACHE_SIZE):
        self.ports = ports or Ports()
        self.log_sink = log_sink
        self.builtins = dict(builtins or {})
        self._transformer = GelTransformer(sql_dialect)
        self.parse = functools.lru_cache(maxsize=cache_size)(self._parse)

    @classmethod
    def from_config(cls, path: Union[str, Path], **kwargs) -> 'ScriptRunner':
        config = load_config(path)
        if 'sql_dialect' in config:
            kwargs.setdefault('sql_dialect', config['sql_dialect'])
        return cls(ports=build_ports(config, base_dir=Path(path).parent), **kwargs)

    def _parse(self, source: str) -> Program:
        """Parses and transforms source text. Raises GelSyntaxError."""
        return self._transformer.transform(parse(source))

    def _new_evaluator(self):
        evaluator = Evaluator(ports=self.ports, log_sink=self.log_sink)
        root = Scope()
        StdLib(evaluator).bind_into(root)
        for name, func in self.builtins.items():
            root.bind(name, func)
        return evaluator, root

    def run(self, source: str) -> ExecutionResult:
        """The main entry point to execute a script. Script errors never raise."""
        try:
            program = self.parse(source)
        except GelError as e:
            return self._error_result(e, [], source)
        return self.run_program(program, source=source)

    def run_program(self, program: Program, source: Optional[str] = None) -> ExecutionResult:
        evaluator, root = self._new_evaluator()
        try:
            value = evaluator.eval(program, root.child())
        except GelError as e:
            return self._error_result(e, evaluator.side_effects, source)
        except Exception as e:
            err = InternalError(str(e), cause=e)
            err.attach_loc(getattr(evaluator.current_node, 'loc', None))
            return self._error_result(err, evaluator.side_effects, source)
        return ExecutionResult(status='success', value=value, side_effects=evaluator.side_effects, source=source)

    def _error_result(self, e: GelError, side_effects: List[Dict], source: Optional[str]) -> ExecutionResult:
        msg = str(e)
        token = None
        if e.line is not None:
            token = {'line': e.line, 'col': e.col, 'tag': (e.loc or {}).get('tag')}
        side_effects.append({'topics': ['stderr'], 'message': msg})
        return ExecutionResult(
            status='error',
            error=e,
            error_message=msg,
            error_token=token,
            side_effects=side_effects,
            source=source,
        )
