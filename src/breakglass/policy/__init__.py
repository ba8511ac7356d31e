"""ServiceNow-backed resource authorization and its decision cache."""

from breakglass.policy.cache import ResourceAuthCache
from breakglass.policy.client import PolicyClient
from breakglass.policy.crn import Crn, is_public_crn, parse, service_from_crn

__all__ = ["Crn", "PolicyClient", "ResourceAuthCache", "is_public_crn", "parse", "service_from_crn"]
