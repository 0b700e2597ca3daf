"""
Defines the core data types for the GEL language runtime.

This module provides the immutable AST node classes produced by the
transformer, the scope chain used for lexical lookup, and the runtime value
types (unit, closures) the evaluator works with.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Union
import collections.abc

from gel.gel_errors import GelError


# =================================================================
# AST Nodes
# =================================================================

@dataclass(frozen=True)
class Node:
    """Base class for all AST nodes. `loc` never takes part in equality."""
    loc: Optional[dict] = field(default=None, compare=False, repr=False, kw_only=True)


# Statements

@dataclass(frozen=True)
class Program(Node):
    statements: Tuple[Node, ...]


@dataclass(frozen=True)
class Let(Node):
    name: str
    value: Node


@dataclass(frozen=True)
class LetFn(Node):
    name: str
    params: Tuple[str, ...]
    body: Node


@dataclass(frozen=True)
class Alias(Node):
    name: str
    class_path: str


@dataclass(frozen=True)
class If(Node):
    condition: Node
    then_branch: Tuple[Node, ...]
    else_branch: Optional[Tuple[Node, ...]] = None


@dataclass(frozen=True)
class For(Node):
    var: str
    source: Node
    body: 'Body'


@dataclass(frozen=True)
class Catch(Node):
    name: str
    statements: Tuple[Node, ...]


@dataclass(frozen=True)
class Body(Node):
    """A `do ... end` block: the unit of scoping and catch-based recovery."""
    statements: Tuple[Node, ...]
    catch: Optional[Catch] = None


@dataclass(frozen=True)
class Log(Node):
    level: str
    message: Node


# Capability calls

@dataclass(frozen=True)
class Http(Node):
    verb: str
    target: Node
    body: Body


@dataclass(frozen=True)
class Soap(Node):
    endpoint: str
    header: Optional['Template'] = None
    body: Optional['Template'] = None


@dataclass(frozen=True)
class Query(Node):
    datasource: str
    kind: str  # SELECT | INSERT | UPDATE | DELETE
    sql: 'Template'
    params: Optional[Tuple[Node, ...]] = None


@dataclass(frozen=True)
class Json(Node):
    name: str


@dataclass(frozen=True)
class ClassRef(Node):
    """Target of `new!`/`static!`: an alias root or a literal dotted path."""
    root: str
    attrs: Tuple[str, ...] = ()
    is_alias: bool = False


@dataclass(frozen=True)
class NewClass(Node):
    target: ClassRef
    args: Tuple[Node, ...]


@dataclass(frozen=True)
class Static(Node):
    target: ClassRef
    args: Tuple[Node, ...] = ()


# Expressions

@dataclass(frozen=True)
class InfixExpr(Node):
    left: Node
    op: str
    right: Node


@dataclass(frozen=True)
class Call(Node):
    callee: Node
    args: Tuple[Node, ...]


@dataclass(frozen=True)
class Dict(Node):
    """Dict literal; pairs keep source order, duplicates are resolved at run time."""
    pairs: Tuple[Tuple[str, Node], ...]


@dataclass(frozen=True)
class Number(Node):
    value: int


@dataclass(frozen=True)
class Bool(Node):
    value: bool


@dataclass(frozen=True)
class Null(Node):
    pass


@dataclass(frozen=True)
class Unit(Node):
    pass


@dataclass(frozen=True)
class NormalString(Node):
    value: str


@dataclass(frozen=True)
class FormatString(Node):
    segments: Tuple[Union[str, Node], ...]


@dataclass(frozen=True)
class Template(Node):
    """Raw foreign text (XML, SQL) with `{expr}` placeholders."""
    segments: Tuple[Union[str, Node], ...]

    def literal_text(self, placeholder: str = "") -> str:
        return "".join(s if isinstance(s, str) else placeholder for s in self.segments)


@dataclass(frozen=True)
class Identifier(Node):
    name: str


@dataclass(frozen=True)
class AliasName(Node):
    name: str


@dataclass(frozen=True)
class DottedAccess(Node):
    root: Union[Identifier, AliasName]
    attrs: Tuple[str, ...]


@dataclass(frozen=True)
class Range(Node):
    start: int
    end: int


# =================================================================
# Core Runtime Types
# =================================================================

class _UnitType:
    """The unit value `()`. Also the 'no real argument' sentinel for calls."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "()"

    def __reduce__(self):
        return (_UnitType, ())


UNIT = _UnitType()


class Scope:
    """Represents a GEL scope frame: ordered bindings plus a parent link.

    Lookup walks frames innermost to outermost and stops at the first match.
    `bind` only ever writes the current frame, so an inner `let` shadows an
    outer binding instead of mutating it.
    """
    def __init__(self, parent: Optional['Scope'] = None):
        self.bindings: dict = {}
        self.parent = parent

    def child(self) -> 'Scope':
        return Scope(parent=self)

    def bind(self, key: str, value: Any):
        if not isinstance(key, str):
            raise TypeError(f"Scope key must be a str, not {type(key)}")
        self.bindings[key] = value

    def find_owner(self, key: str) -> Optional['Scope']:
        """Finds the Scope in the parent chain that owns key."""
        cur = self
        while cur is not None:
            if key in cur.bindings:
                return cur
            cur = cur.parent
        return None

    def __getitem__(self, key: str) -> Any:
        owner = self.find_owner(key)
        if owner is None:
            raise KeyError(f"'{key}'")
        return owner.bindings[key]

    def __contains__(self, key: Any) -> bool:
        return isinstance(key, str) and self.find_owner(key) is not None

    def get(self, key: str, default: Any = None) -> Any:
        owner = self.find_owner(key)
        if owner is None:
            return default
        return owner.bindings[key]

    def keys(self) -> collections.abc.KeysView:
        """Returns a view of keys in the current frame only."""
        return self.bindings.keys()

    def depth(self) -> int:
        n, cur = 0, self.parent
        while cur is not None:
            n, cur = n + 1, cur.parent
        return n

    def __repr__(self) -> str:
        keys = ', '.join(self.bindings.keys())
        parent_id = f", parent=#{id(self.parent)}" if self.parent else ""
        return f"<Scope bindings=[{keys}]{parent_id}>"


class Closure:
    """A function defined with `let name params = ...`.

    Bundles the parameter names, the body AST and the scope the function was
    defined in. The scope is held by reference, so bindings added to it later
    (including the function's own name) are visible when the closure runs.
    """
    def __init__(self, name: str, params: Tuple[str, ...], body: Node, env: Scope):
        self.name = name
        self.params = tuple(params)
        self.body = body
        self.env = env

    @property
    def arity(self) -> int:
        return len(self.params)

    def __repr__(self) -> str:
        return f"<fn {self.name}/{self.arity}>"

    def __eq__(self, other):
        if not isinstance(other, Closure):
            return NotImplemented
        # NOTE: closure comparison is by identity of the captured scope.
        return self.params == other.params and self.body == other.body and self.env is other.env

    def __hash__(self):
        return id(self)


# =================================================================
# Value kinds
# =================================================================

def kind_of(value: Any) -> str:
    """Returns the language-level kind name of a runtime value."""
    match value:
        case bool():
            return "boolean"
        case int():
            return "number"
        case str():
            return "string"
        case None:
            return "null"
        case _UnitType():
            return "unit"
        case Closure():
            return "function"
        case GelError():
            return "error"
        case collections.abc.Mapping():
            return "dict"
        case list() | tuple() | range():
            return "list"
        case _:
            return "handle"


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality; values of different kinds are never equal."""
    ka, kb = kind_of(a), kind_of(b)
    if ka != kb:
        return False
    if ka == "dict":
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[k], b[k]) for k in a.keys())
    if ka == "list":
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))
    if ka in ("function", "error"):
        return a is b
    return a == b
