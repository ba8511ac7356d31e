"""Minimal CRN handling needed for resource authorization.

A CRN has ten colon-separated components::

    crn:v1:<cname>:<ctype>:<service>:<location>:<scope>:<instance>:<type>:<resource>
"""

from __future__ import annotations

from dataclasses import dataclass

from breakglass.errors import BreakGlassError, ErrorCode

CRN_PREFIX = "crn:v1:"
CRN_PARTS = 10


@dataclass(frozen=True)
class Crn:
    cname: str
    ctype: str
    service_name: str
    location: str
    scope: str
    service_instance: str
    resource_type: str
    resource: str


def parse(crn: str) -> Crn:
    """Parse a CRN, lowercased. Raises BreakGlassError(VALIDATION_ERROR) on bad input."""
    lowered = crn.strip().lower()
    parts = lowered.split(":")
    if len(parts) != CRN_PARTS or not lowered.startswith(CRN_PREFIX):
        raise BreakGlassError(ErrorCode.VALIDATION_ERROR, f"invalid CRN: {crn!r}")
    return Crn(*parts[2:])


def is_public_crn(crn: str) -> bool:
    """True for the generic public catalog CRNs anyone may see."""
    try:
        parsed = parse(crn)
    except BreakGlassError:
        return False
    return parsed.cname == "bluemix" and parsed.ctype == "public"


def service_from_crn(crn: str) -> str:
    return parse(crn).service_name


def service_crn(service: str) -> str:
    """Generic CRN naming only a service, used to look up its type."""
    return f"crn:v1:::{service}:::::"
