"""Tests for CRN parsing helpers."""

from __future__ import annotations

import pytest

from breakglass.errors import BreakGlassError, ErrorCode
from breakglass.policy.crn import is_public_crn, parse, service_crn, service_from_crn

PUBLIC = "crn:v1:bluemix:public:cloudantnosqldb:us-south:a/123:inst-1::"
PRIVATE = "crn:v1:internal:dedicated:kms:us-east:a/456:inst-2::"


def test_parse_components():
    crn = parse(PRIVATE)
    assert crn.cname == "internal"
    assert crn.ctype == "dedicated"
    assert crn.service_name == "kms"
    assert crn.location == "us-east"
    assert crn.scope == "a/456"
    assert crn.service_instance == "inst-2"
    assert crn.resource_type == ""
    assert crn.resource == ""


def test_parse_lowercases():
    assert parse("CRN:V1:BlueMix:Public:KMS:::::").service_name == "kms"


@pytest.mark.parametrize("bad", ["", "crn:v1:bluemix", "crn:v2:bluemix:public:kms:::::", "urn:v1:a:b:c:d:e:f:g:h"])
def test_parse_rejects_invalid(bad):
    with pytest.raises(BreakGlassError) as exc_info:
        parse(bad)
    assert exc_info.value.code == ErrorCode.VALIDATION_ERROR


def test_is_public_crn():
    assert is_public_crn(PUBLIC) is True
    assert is_public_crn(PUBLIC.upper()) is True
    assert is_public_crn(PRIVATE) is False
    assert is_public_crn("crn:v1:bluemix:dedicated:kms:::::") is False
    assert is_public_crn("garbage") is False


def test_service_helpers():
    assert service_from_crn(PUBLIC) == "cloudantnosqldb"
    assert service_crn("kms") == "crn:v1:::kms:::::"
    assert service_from_crn(service_crn("kms")) == "kms"
