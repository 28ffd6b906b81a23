"""This module contains a DNS backend based on the boto3 Route 53 client.

boto3 is synchronous, so every API call is run in the default executor.
"""
import asyncio
import functools
import logging
import typing

import boto3
import botocore.exceptions
import cachetools
from pydantic_settings import SettingsConfigDict

from acmeissuer.dns.base import (
    RECORD_NOT_FOUND,
    CreateRecordResult,
    DeleteRecordResult,
    DnsProvider,
    DnsRecord,
    ListRecordsResult,
)
from acmeissuer.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

BOTO_ERRORS = (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError)


def _normalize(name: str) -> str:
    # Route 53 returns the wildcard label in its octal escaped form.
    return name.replace("\\052", "*").rstrip(".").lower()


@PluginRegistry.register_plugin("route53")
class Route53Provider(DnsProvider):
    """Route 53 DNS backend.

    Records are addressed by hosted zone id and fully qualified name with a trailing dot.
    All values of a name and type form one record set, so adding or removing a single value
    rewrites the set with the remaining values intact.
    """

    name = "route53"

    PROPAGATION_DELAY = 60.0

    DEFAULT_TTL = 300

    class Config(DnsProvider.Config):
        model_config = SettingsConfigDict(env_prefix="AWS_", extra="forbid")

        type: typing.Literal["route53"] = "route53"
        region: str = "us-east-1"
        hosted_zone_id: typing.Optional[str] = None
        """discovered from the domain if not given"""

    def __init__(self, cfg: Config, client=None):
        super().__init__(cfg)
        self._client = client or boto3.client("route53", region_name=cfg.region)
        self._hosted_zone_id = cfg.hosted_zone_id
        self._zones = cachetools.LRUCache(maxsize=128)

    async def _call(self, method: str, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(getattr(self._client, method), **kwargs)
        )

    async def _zone_id(self, domain: str) -> typing.Optional[str]:
        if self._hosted_zone_id:
            return self._hosted_zone_id

        labels = domain.rstrip(".").lower().split(".")
        # Walk from the most specific suffix towards the registered domain.
        for i in range(len(labels) - 1):
            candidate = ".".join(labels[i:])
            if candidate in self._zones:
                return self._zones[candidate]

            resp = await self._call(
                "list_hosted_zones_by_name", DNSName=candidate, MaxItems="10"
            )
            for zone in resp.get("HostedZones", []):
                if _normalize(zone["Name"]) != candidate:
                    continue
                if zone.get("Config", {}).get("PrivateZone"):
                    continue

                zone_id = zone["Id"].split("/")[-1]
                logger.debug("Found hosted zone %s for %s", zone_id, domain)
                self._zones[candidate] = zone_id
                return zone_id

        return None

    @staticmethod
    def _value(record: DnsRecord) -> str:
        value = record.content
        if record.type == "TXT" and not value.startswith('"'):
            value = f'"{value}"'
        if record.type == "MX" and record.priority is not None:
            value = f"{record.priority} {value}"
        return value

    @staticmethod
    def _name(record: DnsRecord) -> str:
        return record.name if record.name.endswith(".") else f"{record.name}."

    async def _record_set(
        self, zone_id: str, record: DnsRecord
    ) -> typing.Optional[dict]:
        resp = await self._call(
            "list_resource_record_sets",
            HostedZoneId=zone_id,
            StartRecordName=self._name(record),
            StartRecordType=record.type,
            MaxItems="1",
        )
        for rrset in resp.get("ResourceRecordSets", []):
            if (
                _normalize(rrset["Name"]) == _normalize(record.name)
                and rrset["Type"] == record.type
            ):
                return rrset
        return None

    async def _change(
        self, zone_id: str, action: str, record: DnsRecord, values: list, ttl: int
    ) -> str:
        resp = await self._call(
            "change_resource_record_sets",
            HostedZoneId=zone_id,
            ChangeBatch={
                "Comment": f"{action} by acmeissuer",
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": self._name(record),
                            "Type": record.type,
                            "TTL": ttl,
                            "ResourceRecords": [{"Value": v} for v in values],
                        },
                    }
                ],
            },
        )
        return resp.get("ChangeInfo", {}).get("Id")

    def _no_zone(self, domain: str) -> str:
        return f"No hosted zone found for domain: {domain}"

    async def create_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        try:
            zone_id = await self._zone_id(domain)
            if zone_id is None:
                return CreateRecordResult(success=False, message=self._no_zone(domain))

            value = self._value(record)
            rrset = await self._record_set(zone_id, record)
            if rrset is None:
                change_id = await self._change(
                    zone_id, "CREATE", record, [value], record.ttl or self.DEFAULT_TTL
                )
            else:
                values = [rr["Value"] for rr in rrset.get("ResourceRecords", [])]
                if value not in values:
                    values.append(value)
                change_id = await self._change(
                    zone_id,
                    "UPSERT",
                    record,
                    values,
                    record.ttl or rrset.get("TTL", self.DEFAULT_TTL),
                )
        except BOTO_ERRORS as e:
            logger.exception("route53: could not create %s", record.name)
            return CreateRecordResult(success=False, message=str(e))

        logger.debug("Created %s record %s in zone %s", record.type, record.name, zone_id)
        return CreateRecordResult(
            success=True, id=change_id, message="Record created successfully"
        )

    async def upsert_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        try:
            zone_id = await self._zone_id(domain)
            if zone_id is None:
                return CreateRecordResult(success=False, message=self._no_zone(domain))

            change_id = await self._change(
                zone_id,
                "UPSERT",
                record,
                [self._value(record)],
                record.ttl or self.DEFAULT_TTL,
            )
        except BOTO_ERRORS as e:
            logger.exception("route53: could not upsert %s", record.name)
            return CreateRecordResult(success=False, message=str(e))

        logger.debug("Upserted %s record %s in zone %s", record.type, record.name, zone_id)
        return CreateRecordResult(
            success=True, id=change_id, message="Record upserted successfully"
        )

    async def delete_record(
        self, domain: str, record: DnsRecord
    ) -> DeleteRecordResult:
        try:
            zone_id = await self._zone_id(domain)
            if zone_id is None:
                return DeleteRecordResult(success=False, message=self._no_zone(domain))

            value = self._value(record)
            rrset = await self._record_set(zone_id, record)
            values = (
                [rr["Value"] for rr in rrset.get("ResourceRecords", [])] if rrset else []
            )
            if value not in values:
                return DeleteRecordResult(success=False, message=RECORD_NOT_FOUND)

            remaining = [v for v in values if v != value]
            ttl = rrset.get("TTL", self.DEFAULT_TTL)
            if remaining:
                await self._change(zone_id, "UPSERT", record, remaining, ttl)
            else:
                # A DELETE has to match the record set exactly.
                await self._change(zone_id, "DELETE", record, values, ttl)
        except BOTO_ERRORS as e:
            logger.exception("route53: could not delete %s", record.name)
            return DeleteRecordResult(success=False, message=str(e))

        logger.debug("Deleted %s record %s in zone %s", record.type, record.name, zone_id)
        return DeleteRecordResult(success=True, message="Record deleted successfully")

    def _all_record_sets(self, zone_id: str) -> typing.List[dict]:
        paginator = self._client.get_paginator("list_resource_record_sets")
        return [
            rrset
            for page in paginator.paginate(HostedZoneId=zone_id)
            for rrset in page.get("ResourceRecordSets", [])
        ]

    async def list_records(
        self, domain: str, type_: typing.Optional[str] = None
    ) -> ListRecordsResult:
        try:
            zone_id = await self._zone_id(domain)
            if zone_id is None:
                return ListRecordsResult(success=False, message=self._no_zone(domain))

            loop = asyncio.get_running_loop()
            rrsets = await loop.run_in_executor(None, self._all_record_sets, zone_id)
        except BOTO_ERRORS as e:
            logger.exception("route53: could not list the records of %s", domain)
            return ListRecordsResult(success=False, message=str(e))

        records = []
        for rrset in rrsets:
            if type_ and rrset["Type"] != type_:
                continue
            # Alias record sets carry no values.
            for rr in rrset.get("ResourceRecords", []):
                content, priority = rr["Value"], None
                if rrset["Type"] == "MX" and " " in content:
                    prio, content = content.split(" ", 1)
                    priority = int(prio)
                if rrset["Type"] == "TXT" and len(content) >= 2 and content[0] == content[-1] == '"':
                    content = content[1:-1]

                records.append(
                    DnsRecord(
                        name=_normalize(rrset["Name"]),
                        type=rrset["Type"],
                        content=content,
                        ttl=rrset.get("TTL"),
                        priority=priority,
                    )
                )

        return ListRecordsResult(success=True, records=records)

    async def can_manage_domain(self, domain: str) -> bool:
        try:
            return await self._zone_id(domain) is not None
        except BOTO_ERRORS as e:
            logger.debug("route53 cannot manage %s: %s", domain, e)
            return False
