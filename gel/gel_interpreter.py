"""
The core GEL interpreter: a synchronous tree-walking Evaluator.

The evaluator executes AST nodes from gel_datatypes against a Scope chain.
Capability forms (`http!`, `soap!`, `query!`, `json!`, `new!`, `static!`) are
delegated to the ports bundle; everything else is evaluated here.
"""
import collections.abc
import inspect
import os
import sys
from typing import Any, Callable, Dict, List, Optional

from gel.gel_datatypes import (
    Node, Program, Let, LetFn, Alias, If, For, Body, Log,
    Http, Soap, Query, Json, ClassRef, NewClass, Static,
    InfixExpr, Call, Dict as DictNode, Number, Bool, Null, Unit,
    NormalString, FormatString, Template, Identifier, AliasName,
    DottedAccess, Range, Scope, Closure, UNIT, kind_of, values_equal,
)
from gel.gel_errors import (
    GelError, GelSyntaxError, UndefinedVariable, UndefinedAlias,
    ArityMismatch, GelTypeError, CapabilityError, CallDepthExceeded,
)
from gel.gel_ports import Ports
from gel.gel_printer import Printer
from gel.gel_template import Interpolator

# Attributes of a caught error that scripts may read.
ERROR_FIELDS = ('kind', 'message', 'cause', 'line', 'col')


def _is_number(v) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


class Evaluator:
    """The GEL execution engine. One instance serves exactly one run."""

    def __init__(self, ports: Optional[Ports] = None, log_sink: Optional[Callable[[dict], Any]] = None):
        self.ports = ports or Ports()
        self.log_sink = log_sink
        self.aliases: Dict[str, str] = {}
        self.side_effects: List[Any] = []
        self.call_stack = []
        self.current_node = None
        self.printer = Printer()
        self.interpolator = Interpolator(self, self.printer)

    def _push_frame(self, name, func, args, call_site_node):
        self.call_stack.append({
            'name': name,
            'func': func,
            'args': args,
            'call_site': getattr(call_site_node, 'loc', None),
        })

    def _pop_frame(self):
        if self.call_stack:
            self.call_stack.pop()

    def _dbg(self, *parts):
        if os.environ.get("GEL_DEBUG"):
            print("[DBG]", *parts, file=sys.stderr)

    def eval(self, node: Node, scope: Scope) -> Any:
        """Evaluates one node. Errors are tagged with the innermost node location."""
        self.current_node = node
        try:
            return self._eval(node, scope)
        except GelError as e:
            e.attach_loc(getattr(node, 'loc', None))
            raise

    def _eval(self, node: Node, scope: Scope) -> Any:
        match node:
            # Literals
            case Number(value) | Bool(value) | NormalString(value):
                return value
            case Null():
                return None
            case Unit():
                return UNIT
            case FormatString(segments) | Template(segments):
                return self.interpolator.render(segments, scope)
            case Range(start, end):
                return range(start, end + 1)
            case DictNode(pairs):
                # Duplicate keys keep their first position and take the last value.
                out = {}
                for key, value_node in pairs:
                    out[key] = self.eval(value_node, scope)
                return out

            # Names
            case Identifier(name):
                return self._lookup(name, scope)
            case AliasName(name):
                if name in scope:
                    return scope[name]
                if name in self.aliases:
                    return self.aliases[name]
                raise UndefinedAlias(f"alias '{name}' is not defined")
            case DottedAccess(root, attrs):
                if isinstance(root, AliasName) and root.name not in scope:
                    path = self._alias_path(root.name, attrs)
                    return self._invoke_port('reflect', 'static', path, [])
                value = self.eval(root, scope)
                for attr in attrs:
                    value = self._get_attr(value, attr)
                return value

            # Statements
            case Program(statements):
                return self._exec_block(statements, scope)
            case Let(name, value_node):
                scope.bind(name, self.eval(value_node, scope))
                return UNIT
            case LetFn(name, params, body):
                scope.bind(name, Closure(name, params, body, scope))
                return UNIT
            case Alias(name, class_path):
                self.aliases[name] = class_path
                self._dbg("alias", name, "->", class_path)
                return UNIT
            case If(condition, then_branch, else_branch):
                cond = self.eval(condition, scope)
                if not isinstance(cond, bool):
                    raise GelTypeError(f"if condition must be a boolean, got {kind_of(cond)}")
                if cond:
                    return self._exec_block(then_branch, scope)
                if else_branch is None:
                    return UNIT
                return self._exec_block(else_branch, scope)
            case For(var, source, body):
                for item in self._iterate(source, scope):
                    frame = scope.child()
                    frame.bind(var, item)
                    self.eval(body, frame)
                return UNIT
            case Body():
                return self._exec_body(node, scope)
            case Log(level, message):
                return self._log(level, self.eval(message, scope))

            # Expressions
            case InfixExpr(left, op, right):
                lhs = self.eval(left, scope)
                rhs = self.eval(right, scope)
                return self._apply_op(op, lhs, rhs)
            case Call(callee, args):
                return self._eval_call(node, callee, args, scope)

            # Capabilities
            case Http():
                return self._eval_http(node, scope)
            case Soap(endpoint, header, body):
                header_xml = self.interpolator.render(header.segments, scope) if header is not None else None
                body_xml = self.interpolator.render(body.segments, scope) if body is not None else None
                return self._invoke_port('soap', 'call', endpoint, header_xml, body_xml)
            case Query(datasource, kind, sql, params):
                sql_text = self.interpolator.render(sql.segments, scope)
                values = self._strip_unit([self.eval(p, scope) for p in params or ()])
                return self._invoke_port('query', 'execute', datasource, kind, sql_text, values)
            case Json(name):
                return self._invoke_port('json', 'load', name)
            case NewClass(target, args):
                path = self._class_path(target)
                values = [self.eval(a, scope) for a in args]
                return self._invoke_port('reflect', 'new', path, values)
            case Static(target, args):
                path = self._class_path(target)
                values = [self.eval(a, scope) for a in args]
                return self._invoke_port('reflect', 'static', path, values)

            case _:
                raise GelTypeError(f"cannot evaluate {type(node).__name__}")

    # ------------------------------------------------------------------
    # Blocks, bodies, loops
    # ------------------------------------------------------------------

    def _exec_block(self, statements, scope: Scope) -> Any:
        result = UNIT
        for stmt in statements:
            result = self.eval(stmt, scope)
        return result

    def _exec_body(self, body: Body, scope: Scope) -> Any:
        frame = scope.child()
        try:
            return self._exec_block(body.statements, frame)
        except GelSyntaxError:
            raise
        except GelError as e:
            if body.catch is None:
                raise
            self._dbg("catch", body.catch.name, "<-", e)
            handler = frame.child()
            handler.bind(body.catch.name, e)
            return self._exec_block(body.catch.statements, handler)

    def _iterate(self, source: Node, scope: Scope):
        if isinstance(source, Range):
            return range(source.start, source.end + 1)
        value = self.eval(source, scope)
        if isinstance(value, (list, tuple, range)):
            return value
        if isinstance(value, collections.abc.Mapping):
            return list(value.values())
        raise GelTypeError(f"cannot iterate over a {kind_of(value)}")

    # ------------------------------------------------------------------
    # Names and attributes
    # ------------------------------------------------------------------

    def _lookup(self, name: str, scope: Scope) -> Any:
        owner = scope.find_owner(name)
        if owner is None:
            raise UndefinedVariable(f"'{name}' is not defined")
        return owner.bindings[name]

    def _get_attr(self, value: Any, attr: str) -> Any:
        if isinstance(value, collections.abc.Mapping):
            if attr not in value:
                raise UndefinedVariable(f"key '{attr}' not found")
            return value[attr]
        if isinstance(value, GelError):
            if attr not in ERROR_FIELDS:
                raise UndefinedVariable(f"error has no field '{attr}'")
            return getattr(value, attr)
        if attr.startswith('_') or not hasattr(value, attr):
            raise UndefinedVariable(f"{kind_of(value)} has no attribute '{attr}'")
        return getattr(value, attr)

    def _alias_path(self, alias: str, attrs=()) -> str:
        if alias not in self.aliases:
            raise UndefinedAlias(f"alias '{alias}' is not defined")
        return ".".join((self.aliases[alias],) + tuple(attrs))

    def _class_path(self, ref: ClassRef) -> str:
        if ref.is_alias:
            return self._alias_path(ref.root, ref.attrs)
        return ref.root

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _eval_call(self, node: Call, callee: Node, args, scope: Scope) -> Any:
        if isinstance(callee, DottedAccess) and isinstance(callee.root, AliasName) and callee.root.name not in scope:
            path = self._alias_path(callee.root.name, callee.attrs)
            values = [self.eval(a, scope) for a in args]
            return self._invoke_port('reflect', 'static', path, values)
        func = self.eval(callee, scope)
        values = [self.eval(a, scope) for a in args]
        return self.call(func, values, node)

    def call(self, func: Any, args: List[Any], call_site: Optional[Node] = None) -> Any:
        """Applies a closure or Python callable to already-evaluated arguments."""
        if isinstance(func, Closure):
            if len(args) != func.arity:
                raise ArityMismatch(
                    f"{func.name} expects {func.arity} argument(s), got {len(args)}",
                    expected=func.arity, got=len(args),
                )
            frame = func.env.child()
            for name, value in zip(func.params, args):
                frame.bind(name, value)
            self._push_frame(func.name, func, args, call_site)
            try:
                return self.eval(func.body, frame)
            except RecursionError:
                raise CallDepthExceeded(f"maximum call depth exceeded in {func.name}") from None
            finally:
                self._pop_frame()

        if callable(func) and not isinstance(func, GelError):
            return self._call_python(func, self._strip_unit(args), call_site)

        raise GelTypeError(f"a {kind_of(func)} is not callable")

    def _call_python(self, func: Callable, args: List[Any], call_site: Optional[Node]) -> Any:
        name = getattr(func, '__name__', type(func).__name__)
        try:
            sig = inspect.signature(func)
        except (TypeError, ValueError):
            sig = None
        if sig is not None:
            try:
                sig.bind(*args)
            except TypeError as e:
                raise ArityMismatch(f"{name}: {e}", got=len(args)) from e
        self._push_frame(name, func, args, call_site)
        try:
            return func(*args)
        except GelError:
            raise
        except Exception as e:
            raise CapabilityError(f"{name} failed: {e}", port="host", cause=e) from e
        finally:
            self._pop_frame()

    @staticmethod
    def _strip_unit(args: List[Any]) -> List[Any]:
        """A lone `()` argument means 'no arguments' for host callables and ports."""
        if len(args) == 1 and args[0] is UNIT:
            return []
        return list(args)

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def _apply_op(self, op: str, a: Any, b: Any) -> Any:
        match op:
            case '==':
                return values_equal(a, b)
            case '!=':
                return not values_equal(a, b)
            case '+' | '-' | '*' | '/':
                if not (_is_number(a) and _is_number(b)):
                    raise GelTypeError(f"operator '{op}' needs two numbers, got {kind_of(a)} and {kind_of(b)}")
                if op == '+':
                    return a + b
                if op == '-':
                    return a - b
                if op == '*':
                    return a * b
                if b == 0:
                    raise GelTypeError("division by zero")
                q = abs(a) // abs(b)
                return -q if (a < 0) != (b < 0) else q
            case '<' | '<=' | '>' | '>=':
                if not ((_is_number(a) and _is_number(b)) or (isinstance(a, str) and isinstance(b, str))):
                    raise GelTypeError(f"operator '{op}' needs two numbers or two strings, got {kind_of(a)} and {kind_of(b)}")
                if op == '<':
                    return a < b
                if op == '<=':
                    return a <= b
                if op == '>':
                    return a > b
                return a >= b
        raise GelTypeError(f"unknown operator '{op}'")

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def _invoke_port(self, port_name: str, method: str, *args) -> Any:
        port = getattr(self.ports, port_name, None)
        if port is None:
            raise CapabilityError(f"no {port_name} port is configured", port=port_name)
        self._dbg(port_name, method, *args)
        try:
            return getattr(port, method)(*args)
        except GelError:
            raise
        except Exception as e:
            raise CapabilityError(f"{port_name} {method} failed: {e}", port=port_name, cause=e) from e

    def _eval_http(self, node: Http, scope: Scope) -> Any:
        target = self.eval(node.target, scope)
        if not isinstance(target, str):
            raise GelTypeError(f"http target must be a string, got {kind_of(target)}")
        built: Dict[str, Any] = {}
        frame = scope.child()
        for name, builder in self._http_builders(built).items():
            frame.bind(name, builder)
        self.eval(node.body, frame)
        return self._invoke_port('http', 'request', node.verb, target, built)

    def _http_builders(self, built: Dict[str, Any]) -> Dict[str, Callable]:
        """Request builder functions visible inside an `http!` body."""
        def timeout(ms):
            if not _is_number(ms):
                raise GelTypeError(f"timeout expects a number of milliseconds, got {kind_of(ms)}")
            built['timeout'] = ms
            return UNIT

        def headers(values):
            if not isinstance(values, collections.abc.Mapping):
                raise GelTypeError(f"headers expects a dict, got {kind_of(values)}")
            built.setdefault('headers', {}).update(values)
            return UNIT

        def json(value):
            built['json'] = value
            return UNIT

        def text(value):
            if not isinstance(value, str):
                raise GelTypeError(f"text expects a string, got {kind_of(value)}")
            built['text'] = value
            return UNIT

        return {'timeout': timeout, 'headers': headers, 'json': json, 'text': text}

    def _log(self, level: str, message: Any) -> Any:
        event = {'level': level, 'message': self.printer.to_text(message)}
        self.side_effects.append(event)
        if self.log_sink is not None:
            try:
                self.log_sink(dict(event))
            except Exception as e:
                raise CapabilityError(f"log sink failed: {e}", port="log", cause=e) from e
        return UNIT
