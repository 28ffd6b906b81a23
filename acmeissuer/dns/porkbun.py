"""DNS backend for the Porkbun JSON API v3.

Record names are relative to the registered domain and the apex is the empty name.
https://porkbun.com/api/json/v3/documentation
"""
import asyncio
import logging
import typing

import aiohttp
from pydantic_settings import SettingsConfigDict

from acmeissuer.dns.base import (
    RECORD_NOT_FOUND,
    CreateRecordResult,
    DeleteRecordResult,
    DnsApiError,
    DnsProvider,
    DnsRecord,
    HttpDnsProvider,
    ListRecordsResult,
    fqdn,
    relative_name,
    root_domain,
)
from acmeissuer.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


@PluginRegistry.register_plugin("porkbun")
class PorkbunProvider(HttpDnsProvider):
    name = "porkbun"

    PROPAGATION_DELAY = 60.0

    MIN_TTL = 600
    """Porkbun rejects TTLs below ten minutes."""

    class Config(DnsProvider.Config):
        model_config = SettingsConfigDict(env_prefix="PORKBUN_", extra="forbid")

        type: typing.Literal["porkbun"] = "porkbun"
        api_key: str
        secret_key: str
        base_url: str = "https://api.porkbun.com/api/json/v3"

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._api_key = cfg.api_key
        self._secret_key = cfg.secret_key
        self._base_url = cfg.base_url.rstrip("/")

    async def _request(self, endpoint: str, **body) -> dict:
        body.update(apikey=self._api_key, secretapikey=self._secret_key)

        async with self.http.post(f"{self._base_url}{endpoint}", json=body) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                data = None

            if resp.status >= 400 and not data:
                raise DnsApiError(self.name, f"{resp.status} {resp.reason}", resp.status)

        if not data or data.get("status") != "SUCCESS":
            message = (data or {}).get("message") or "Unknown error"
            raise DnsApiError(self.name, message, resp.status)

        return data

    def _record_body(self, record: DnsRecord, zone: str) -> dict:
        body = {
            "name": relative_name(record.name, zone),
            "type": record.type,
            "content": record.content,
            "ttl": str(max(record.ttl or self.MIN_TTL, self.MIN_TTL)),
        }
        if record.type in ("MX", "SRV") and record.priority is not None:
            body["prio"] = str(record.priority)
        return body

    async def _retrieve(self, zone: str) -> typing.List[DnsRecord]:
        data = await self._request(f"/dns/retrieve/{zone}")
        return [
            DnsRecord(
                name=fqdn(r.get("name") or "", zone),
                type=r["type"],
                content=r["content"],
                ttl=int(r["ttl"]) if r.get("ttl") else None,
                priority=int(r["prio"]) if r.get("prio") else None,
                id=str(r["id"]),
            )
            for r in data.get("records", [])
        ]

    async def create_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        zone = root_domain(domain)
        try:
            data = await self._request(
                f"/dns/create/{zone}", **self._record_body(record, zone)
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return CreateRecordResult(
                success=False, message=self._failure("create", record.name, e)
            )

        logger.debug("Created %s record %s in %s", record.type, record.name, zone)
        record_id = data.get("id")
        return CreateRecordResult(
            success=True,
            id=str(record_id) if record_id is not None else None,
            message="Record created successfully",
        )

    async def upsert_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        zone = root_domain(domain)
        try:
            existing = [
                r
                for r in await self._retrieve(zone)
                if r.type == record.type
                and relative_name(r.name, zone) == relative_name(record.name, zone)
            ]

            if not existing:
                return await self.create_record(domain, record)

            current = next((r for r in existing if r.content == record.content), None)
            if current is None:
                current = existing[0]
                await self._request(
                    f"/dns/edit/{zone}/{current.id}", **self._record_body(record, zone)
                )
                message = "Record updated successfully"
            else:
                message = "Record already up to date"

            # The upserted value replaces all others at this name and type.
            for stale in existing:
                if stale is not current:
                    await self._request(f"/dns/delete/{zone}/{stale.id}")
                    logger.debug(
                        "Deleted stale %s record %s = %s", stale.type, stale.name, stale.content
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return CreateRecordResult(
                success=False, message=self._failure("upsert", record.name, e)
            )

        logger.debug("Upserted %s record %s in %s", record.type, record.name, zone)
        return CreateRecordResult(success=True, id=current.id, message=message)

    async def delete_record(
        self, domain: str, record: DnsRecord
    ) -> DeleteRecordResult:
        zone = root_domain(domain)
        try:
            match = next(
                (r for r in await self._retrieve(zone) if r.matches(record)), None
            )
            if match is None:
                return DeleteRecordResult(success=False, message=RECORD_NOT_FOUND)

            await self._request(f"/dns/delete/{zone}/{match.id}")
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return DeleteRecordResult(
                success=False, message=self._failure("delete", record.name, e)
            )

        logger.debug("Deleted %s record %s in %s", record.type, record.name, zone)
        return DeleteRecordResult(success=True, message="Record deleted successfully")

    async def list_records(
        self, domain: str, type_: typing.Optional[str] = None
    ) -> ListRecordsResult:
        try:
            records = await self._retrieve(root_domain(domain))
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return ListRecordsResult(
                success=False, message=self._failure("list", domain, e)
            )

        if type_:
            records = [r for r in records if r.type == type_]
        return ListRecordsResult(success=True, records=records)

    async def can_manage_domain(self, domain: str) -> bool:
        try:
            await self._request(f"/dns/retrieve/{root_domain(domain)}")
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            logger.debug("%s cannot manage %s: %s", self.name, domain, e)
            return False
        return True
