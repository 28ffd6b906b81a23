from unittest.mock import MagicMock

import botocore.exceptions
import pytest

from acmeissuer.dns import DnsRecord, Route53Provider
from acmeissuer.dns.base import RECORD_NOT_FOUND

ZONES = {
    "HostedZones": [
        {"Id": "/hostedzone/ZPRIVATE", "Name": "example.com.", "Config": {"PrivateZone": True}},
        {"Id": "/hostedzone/Z123", "Name": "example.com.", "Config": {"PrivateZone": False}},
        {"Id": "/hostedzone/Z456", "Name": "example.net.", "Config": {"PrivateZone": False}},
    ]
}


def txt(name, content, ttl=60):
    return DnsRecord(name=name, type="TXT", content=content, ttl=ttl)


def rrsets(*values, ttl=60, name="_acme-challenge.example.com."):
    if not values:
        return {"ResourceRecordSets": []}
    return {
        "ResourceRecordSets": [
            {
                "Name": name,
                "Type": "TXT",
                "TTL": ttl,
                "ResourceRecords": [{"Value": f'"{v}"'} for v in values],
            }
        ]
    }


@pytest.fixture
def boto_client():
    client = MagicMock()
    client.list_hosted_zones_by_name.return_value = ZONES
    client.list_resource_record_sets.return_value = rrsets()
    client.change_resource_record_sets.return_value = {"ChangeInfo": {"Id": "/change/C1"}}
    return client


@pytest.fixture
def route53(boto_client):
    return Route53Provider(Route53Provider.Config(hosted_zone_id=None), client=boto_client)


def change_of(boto_client):
    kwargs = boto_client.change_resource_record_sets.call_args.kwargs
    assert kwargs["HostedZoneId"] == "Z123"
    (change,) = kwargs["ChangeBatch"]["Changes"]
    rrset = change["ResourceRecordSet"]
    return change["Action"], rrset["Name"], [rr["Value"] for rr in rrset["ResourceRecords"]]


@pytest.mark.asyncio
async def test_upsert_record(route53, boto_client):
    result = await route53.upsert_record(
        "www.example.com", txt("_acme-challenge.www.example.com", "v1")
    )

    assert result.success
    assert result.id == "/change/C1"
    assert change_of(boto_client) == ("UPSERT", "_acme-challenge.www.example.com.", ['"v1"'])

    # www.example.com is no zone of its own, the registered domain is.
    candidates = [c.kwargs["DNSName"] for c in boto_client.list_hosted_zones_by_name.call_args_list]
    assert candidates == ["www.example.com", "example.com"]


@pytest.mark.asyncio
async def test_zone_lookup_is_cached(route53, boto_client):
    await route53.upsert_record("example.com", txt("_acme-challenge.example.com", "v1"))
    await route53.upsert_record("example.com", txt("_acme-challenge.example.com", "v2"))

    assert boto_client.list_hosted_zones_by_name.call_count == 1


@pytest.mark.asyncio
async def test_create_record(route53, boto_client):
    await route53.create_record("example.com", txt("_acme-challenge.example.com", "v1"))
    assert change_of(boto_client) == ("CREATE", "_acme-challenge.example.com.", ['"v1"'])

    boto_client.list_resource_record_sets.return_value = rrsets("v1")
    await route53.create_record("example.com", txt("_acme-challenge.example.com", "v2"))
    assert change_of(boto_client) == (
        "UPSERT",
        "_acme-challenge.example.com.",
        ['"v1"', '"v2"'],
    )


@pytest.mark.asyncio
async def test_delete_record(route53, boto_client):
    boto_client.list_resource_record_sets.return_value = rrsets("v1", "v2", ttl=120)

    result = await route53.delete_record("example.com", txt("_acme-challenge.example.com", "v1"))
    assert result.success
    assert change_of(boto_client) == ("UPSERT", "_acme-challenge.example.com.", ['"v2"'])
    assert (
        boto_client.change_resource_record_sets.call_args.kwargs["ChangeBatch"]["Changes"][0][
            "ResourceRecordSet"
        ]["TTL"]
        == 120
    )

    boto_client.list_resource_record_sets.return_value = rrsets("v2")
    result = await route53.delete_record("example.com", txt("_acme-challenge.example.com", "v2"))
    assert result.success
    assert change_of(boto_client) == ("DELETE", "_acme-challenge.example.com.", ['"v2"'])

    boto_client.list_resource_record_sets.return_value = rrsets()
    result = await route53.delete_record("example.com", txt("_acme-challenge.example.com", "v2"))
    assert not result.success
    assert result.message == RECORD_NOT_FOUND


@pytest.mark.asyncio
async def test_list_records(route53, boto_client):
    paginator = MagicMock()
    paginator.paginate.return_value = [
        {
            "ResourceRecordSets": [
                {
                    "Name": "example.com.",
                    "Type": "MX",
                    "TTL": 300,
                    "ResourceRecords": [{"Value": "10 mail.example.com"}],
                },
                {"Name": "\\052.example.com.", "Type": "A", "AliasTarget": {}},
            ]
        },
        rrsets("v1"),
    ]
    boto_client.get_paginator.return_value = paginator

    result = await route53.list_records("example.com")

    assert result.success
    assert result.records == [
        DnsRecord("example.com", "MX", "mail.example.com", 300, 10),
        DnsRecord("_acme-challenge.example.com", "TXT", "v1", 60),
    ]
    boto_client.get_paginator.assert_called_with("list_resource_record_sets")

    result = await route53.list_records("example.com", "TXT")
    assert [r.content for r in result.records] == ["v1"]


@pytest.mark.asyncio
async def test_no_hosted_zone(route53):
    result = await route53.upsert_record("example.org", txt("_acme-challenge.example.org", "v"))

    assert not result.success
    assert result.message == "No hosted zone found for domain: example.org"
    assert not await route53.can_manage_domain("example.org")
    assert await route53.can_manage_domain("example.com")


@pytest.mark.asyncio
async def test_configured_zone_id(boto_client):
    provider = Route53Provider(
        Route53Provider.Config(hosted_zone_id="Z123"), client=boto_client
    )

    await provider.upsert_record("example.com", txt("_acme-challenge.example.com", "v1"))

    boto_client.list_hosted_zones_by_name.assert_not_called()
    assert change_of(boto_client)[0] == "UPSERT"


@pytest.mark.asyncio
async def test_boto_errors(route53, boto_client):
    boto_client.change_resource_record_sets.side_effect = botocore.exceptions.ClientError(
        {"Error": {"Code": "InvalidChangeBatch", "Message": "Tried to create a duplicate"}},
        "ChangeResourceRecordSets",
    )

    result = await route53.upsert_record("example.com", txt("_acme-challenge.example.com", "v1"))

    assert not result.success
    assert "InvalidChangeBatch" in result.message


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("AWS_REGION", "eu-central-1")

    assert Route53Provider.Config().region == "eu-central-1"
