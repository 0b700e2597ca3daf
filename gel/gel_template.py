"""
String interpolation for GEL: format strings, SOAP XML and SQL templates.
"""
from typing import Sequence, Union

from gel.gel_datatypes import Node, Scope, Template
from gel.gel_parser import parse_template
from gel.gel_printer import Printer
from gel.gel_transformer import GelTransformer


class Interpolator:
    """Renders literal segments and `{expr}` placeholders to a single string.

    Placeholders are evaluated by the owning evaluator in the caller's scope,
    left to right, and their values are spliced in as canonical text.
    """

    def __init__(self, evaluator, printer: Printer = None):
        self.evaluator = evaluator
        self.printer = printer or Printer()
        self._transformer = GelTransformer()

    def render(self, segments: Sequence[Union[str, Node]], scope: Scope) -> str:
        parts = []
        for seg in segments:
            if isinstance(seg, str):
                parts.append(seg)
            else:
                parts.append(self.printer.to_text(self.evaluator.eval(seg, scope)))
        return "".join(parts)

    def interpolate(self, text: str, scope: Scope) -> str:
        """Parses `text` as a template at run time and renders it."""
        template: Template = self._transformer.transform(parse_template(text))
        return self.render(template.segments, scope)
