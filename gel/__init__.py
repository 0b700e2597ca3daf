from gel.gel_datatypes import UNIT, Scope, Closure
from gel.gel_errors import (
    GelError, GelSyntaxError, UndefinedVariable, UndefinedAlias,
    ArityMismatch, GelTypeError, CapabilityError, CallDepthExceeded, InternalError,
)
from gel.gel_ports import Ports, HttpPort, SoapPort, QueryPort, JsonPort, ReflectPort
from gel.gel_runtime import ScriptRunner, ExecutionResult, logging_sink, load_config, build_ports

__all__ = [
    "UNIT", "Scope", "Closure",
    "GelError", "GelSyntaxError", "UndefinedVariable", "UndefinedAlias",
    "ArityMismatch", "GelTypeError", "CapabilityError", "CallDepthExceeded", "InternalError",
    "Ports", "HttpPort", "SoapPort", "QueryPort", "JsonPort", "ReflectPort",
    "ScriptRunner", "ExecutionResult", "logging_sink", "load_config", "build_ports",
]
