"""
Default SOAP port: SOAP 1.1 envelopes rendered with pystache, sent with httpx,
responses decoded with xmltodict.
"""
import logging
from typing import Any, Dict, Optional

import httpx
import pystache
import xmltodict

from gel.gel_ports import SoapPort
from gel.gel_serialize import to_builtin

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

ENVELOPE_TEMPLATE = (
    '<?xml version="1.0" encoding="utf-8"?>\n'
    '<soap:Envelope xmlns:soap="{{ns}}">'
    '{{#header}}<soap:Header>{{{header}}}</soap:Header>{{/header}}'
    '<soap:Body>{{{body}}}</soap:Body>'
    '</soap:Envelope>'
)


def _local(tag: str) -> str:
    return tag.rsplit(':', 1)[-1]


def _child(node: Any, name: str) -> Any:
    """Finds a child element by local name, ignoring any namespace prefix."""
    if not isinstance(node, dict):
        return None
    for key, value in node.items():
        if not key.startswith(('@', '#')) and _local(key) == name:
            return value
    return None


class SoapFault(Exception):
    def __init__(self, faultcode: str, faultstring: str, detail: Any = None):
        super().__init__(f"{faultcode}: {faultstring}")
        self.faultcode = faultcode
        self.faultstring = faultstring
        self.detail = detail


class SoapInvoker(SoapPort):
    """
    config keys:
      - timeout: seconds (default 5.0)
      - headers: extra HTTP headers
      - soap_action: value of the SOAPAction header
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, *, transport: Optional[httpx.BaseTransport] = None):
        cfg = dict(config or {})
        self.timeout = float(cfg.pop('timeout', 5.0))
        self.headers = dict(cfg.pop('headers', {}))
        self.soap_action = cfg.pop('soap_action', None)
        self.transport = transport
        self._renderer = pystache.Renderer(escape=lambda u: u)

    def envelope(self, header_xml: Optional[str], body_xml: Optional[str]) -> str:
        return self._renderer.render(ENVELOPE_TEMPLATE, {
            'ns': SOAP_ENV_NS,
            'header': header_xml or "",
            'body': body_xml or "",
        })

    def call(self, endpoint: str, header_xml: Optional[str], body_xml: Optional[str]) -> Any:
        payload = self.envelope(header_xml, body_xml)
        headers = {"Content-Type": "text/xml; charset=utf-8", **self.headers}
        if self.soap_action is not None:
            headers["SOAPAction"] = f'"{self.soap_action}"'

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            resp = client.post(endpoint, content=payload.encode('utf-8'), headers=headers)
        logger.debug("soap %s -> %d", endpoint, resp.status_code)

        if not resp.content:
            if 200 <= resp.status_code < 300:
                return None
            raise RuntimeError(f"SOAP {resp.status_code} for {endpoint}")

        doc = to_builtin(xmltodict.parse(resp.content))
        body = _child(_child(doc, 'Envelope'), 'Body')
        fault = _child(body, 'Fault')
        if fault is not None:
            logger.warning("soap fault from %s: %s", endpoint, fault)
            raise SoapFault(str(_child(fault, 'faultcode')), str(_child(fault, 'faultstring')), _child(fault, 'detail'))
        if not 200 <= resp.status_code < 300:
            raise RuntimeError(f"SOAP {resp.status_code} for {endpoint}")
        return body
