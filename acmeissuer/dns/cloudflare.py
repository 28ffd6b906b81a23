import asyncio
import logging
import typing

import aiohttp
import cachetools
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
    root_domain,
)
from acmeissuer.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


@PluginRegistry.register_plugin("cloudflare")
class CloudflareProvider(HttpDnsProvider):
    """DNS backend for the Cloudflare v4 API.

    Records live in zones that are looked up by the registered domain.
    Record names are fully qualified, without trailing dot.
    """

    name = "cloudflare"

    PROPAGATION_DELAY = 30.0

    AUTOMATIC_TTL = 1
    PER_PAGE = 100

    class Config(DnsProvider.Config):
        model_config = SettingsConfigDict(env_prefix="CLOUDFLARE_", extra="forbid")

        type: typing.Literal["cloudflare"] = "cloudflare"
        api_token: str
        base_url: str = "https://api.cloudflare.com/client/v4"

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._auth = f"Bearer {cfg.api_token}"
        self._base_url = cfg.base_url.rstrip("/")
        self._zones = cachetools.LRUCache(maxsize=128)

    async def _request(
        self, method: str, path: str, body: dict = None, params: dict = None
    ) -> dict:
        async with self.http.request(
            method,
            f"{self._base_url}{path}",
            json=body,
            params=params,
            headers={"Authorization": self._auth},
        ) as resp:
            try:
                data = await resp.json(content_type=None)
            except ValueError:
                raise DnsApiError(self.name, f"{resp.status} {resp.reason}", resp.status)

        if not isinstance(data, dict) or not data.get("success"):
            errors = (data or {}).get("errors") or []
            message = ", ".join(e.get("message", "") for e in errors) or "Unknown error"
            raise DnsApiError(self.name, message, resp.status)

        return data

    async def _zone_id(self, domain: str) -> str:
        zone = root_domain(domain)
        if (zone_id := self._zones.get(zone)) is not None:
            return zone_id

        data = await self._request("GET", "/zones", params={"name": zone})
        if not data.get("result"):
            raise DnsApiError(self.name, f"Zone not found for domain: {zone}")

        zone_id = data["result"][0]["id"]
        self._zones[zone] = zone_id
        return zone_id

    def _to_cloudflare(self, record: DnsRecord, zone: str) -> dict:
        cf_record = {
            "type": record.type,
            "name": fqdn(record.name, zone),
            "content": record.content,
            "ttl": record.ttl or self.AUTOMATIC_TTL,
        }
        if record.type in ("MX", "SRV") and record.priority is not None:
            cf_record["priority"] = record.priority
        return cf_record

    @staticmethod
    def _from_cloudflare(cf_record: dict) -> DnsRecord:
        return DnsRecord(
            name=cf_record["name"],
            type=cf_record["type"],
            content=cf_record["content"],
            ttl=cf_record.get("ttl"),
            priority=cf_record.get("priority"),
            id=cf_record["id"],
        )

    async def _find(
        self, zone_id: str, record: DnsRecord, zone: str
    ) -> typing.List[dict]:
        data = await self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"type": record.type, "name": fqdn(record.name, zone)},
        )
        return data.get("result") or []

    async def create_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        zone = root_domain(domain)
        try:
            zone_id = await self._zone_id(domain)
            data = await self._request(
                "POST",
                f"/zones/{zone_id}/dns_records",
                self._to_cloudflare(record, zone),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return CreateRecordResult(
                success=False, message=self._failure("create", record.name, e)
            )

        logger.debug("Created %s record %s in %s", record.type, record.name, zone)
        return CreateRecordResult(
            success=True, id=data["result"]["id"], message="Record created successfully"
        )

    async def upsert_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        zone = root_domain(domain)
        try:
            zone_id = await self._zone_id(domain)
            existing = await self._find(zone_id, record, zone)

            current = next((r for r in existing if r["content"] == record.content), None)

            if not existing:
                data = await self._request(
                    "POST",
                    f"/zones/{zone_id}/dns_records",
                    self._to_cloudflare(record, zone),
                )
                current = data["result"]
                message = "Record created successfully"
            elif current is None:
                current = existing[0]
                await self._request(
                    "PUT",
                    f"/zones/{zone_id}/dns_records/{current['id']}",
                    self._to_cloudflare(record, zone),
                )
                message = "Record updated successfully"
            else:
                message = "Record already up to date"

            # The upserted value replaces all others at this name and type.
            for stale in existing:
                if stale["id"] != current["id"]:
                    await self._request(
                        "DELETE", f"/zones/{zone_id}/dns_records/{stale['id']}"
                    )
                    logger.debug(
                        "Deleted stale %s record %s = %s",
                        stale["type"],
                        stale["name"],
                        stale["content"],
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return CreateRecordResult(
                success=False, message=self._failure("upsert", record.name, e)
            )

        logger.debug("Upserted %s record %s in %s", record.type, record.name, zone)
        return CreateRecordResult(success=True, id=current["id"], message=message)

    async def delete_record(
        self, domain: str, record: DnsRecord
    ) -> DeleteRecordResult:
        zone = root_domain(domain)
        try:
            zone_id = await self._zone_id(domain)
            match = next(
                (
                    r
                    for r in await self._find(zone_id, record, zone)
                    if r["content"] == record.content
                ),
                None,
            )
            if match is None:
                return DeleteRecordResult(success=False, message=RECORD_NOT_FOUND)

            await self._request("DELETE", f"/zones/{zone_id}/dns_records/{match['id']}")
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return DeleteRecordResult(
                success=False, message=self._failure("delete", record.name, e)
            )

        logger.debug("Deleted %s record %s in %s", record.type, record.name, zone)
        return DeleteRecordResult(success=True, message="Record deleted successfully")

    async def list_records(
        self, domain: str, type_: typing.Optional[str] = None
    ) -> ListRecordsResult:
        params = {"per_page": self.PER_PAGE}
        if type_:
            params["type"] = getattr(type_, "value", type_)

        records = []
        try:
            zone_id = await self._zone_id(domain)
            page = 1
            while True:
                params["page"] = page
                data = await self._request(
                    "GET", f"/zones/{zone_id}/dns_records", params=params
                )
                records.extend(self._from_cloudflare(r) for r in data.get("result") or [])

                info = data.get("result_info")
                if not info or page >= info.get("total_pages", 1):
                    break
                page += 1
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return ListRecordsResult(
                success=False, message=self._failure("list", domain, e)
            )

        return ListRecordsResult(success=True, records=records)

    async def can_manage_domain(self, domain: str) -> bool:
        try:
            await self._zone_id(domain)
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            logger.debug("%s cannot manage %s: %s", self.name, domain, e)
            return False
        return True
