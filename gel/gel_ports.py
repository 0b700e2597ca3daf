"""
Capability port contracts.

The evaluator never talks to the network, a database or the host object model
directly. Each `http!`, `soap!`, `query!`, `json!`, `new!` and `static!` form is
delegated to one of the ports below, bundled in a `Ports` object the runner
hands to the evaluator. Hosts implement the ones they need; gel ships default
implementations in gel_http, gel_soap, gel_query, gel_json and gel_reflect.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class HttpPort(ABC):
    @abstractmethod
    def request(self, verb: str, target: str, built_body: Dict[str, Any]) -> Any:
        """Performs one HTTP request. `built_body` holds the request builder output."""


class SoapPort(ABC):
    @abstractmethod
    def call(self, endpoint: str, header_xml: Optional[str], body_xml: Optional[str]) -> Any:
        ...


class QueryPort(ABC):
    @abstractmethod
    def execute(self, datasource: str, kind: str, sql_text: str, params: List[Any]) -> Any:
        """Runs one SQL statement with positional parameters.

        `kind` is SELECT, INSERT, UPDATE or DELETE as checked at parse time.
        """


class JsonPort(ABC):
    @abstractmethod
    def load(self, name: str) -> Any:
        ...


class ReflectPort(ABC):
    @abstractmethod
    def new(self, class_path: str, args: List[Any]) -> Any:
        """Instantiates `class_path`. `[UNIT]` means a no-argument constructor."""

    @abstractmethod
    def static(self, member_path: str, args: List[Any]) -> Any:
        """Reads a static member (no args) or invokes it with `args`."""


@dataclass
class Ports:
    """The set of capability ports available to one runner."""
    http: Optional[HttpPort] = None
    soap: Optional[SoapPort] = None
    query: Optional[QueryPort] = None
    json: Optional[JsonPort] = None
    reflect: Optional[ReflectPort] = None
