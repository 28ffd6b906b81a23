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

GODADDY_API_URLS = {
    "production": "https://api.godaddy.com",
    "ote": "https://api.ote-godaddy.com",
}
"""The production API and the OTE test environment."""


@PluginRegistry.register_plugin("godaddy")
class GoDaddyProvider(HttpDnsProvider):
    """DNS backend for the GoDaddy domains API.

    Records are addressed by type and name relative to the registered domain, the apex being *@*.
    The API has no endpoint to delete a single value, so deletion rewrites the remaining values
    of the record set.
    """

    name = "godaddy"

    PROPAGATION_DELAY = 120.0

    MIN_TTL = 600
    """GoDaddy rejects TTLs below ten minutes."""

    class Config(DnsProvider.Config):
        model_config = SettingsConfigDict(env_prefix="GODADDY_", extra="forbid")

        type: typing.Literal["godaddy"] = "godaddy"
        api_key: str
        api_secret: str
        environment: typing.Literal["production", "ote"] = "production"
        base_url: typing.Optional[str] = None
        """overrides the API URL chosen by *environment*"""

    def __init__(self, cfg: Config):
        super().__init__(cfg)
        self._auth = f"sso-key {cfg.api_key}:{cfg.api_secret}"
        self._base_url = (cfg.base_url or GODADDY_API_URLS[cfg.environment]).rstrip(
            "/"
        )

    async def _request(self, method: str, path: str, body=None):
        headers = {"Authorization": self._auth, "Accept": "application/json"}

        async with self.http.request(
            method, f"{self._base_url}{path}", json=body, headers=headers
        ) as resp:
            text = await resp.text()

            if resp.status >= 400:
                message = f"{resp.status} {resp.reason}"
                try:
                    error = await resp.json(content_type=None)
                except ValueError:
                    error = None
                if isinstance(error, dict) and error.get("message"):
                    message = error["message"]
                    if error.get("fields"):
                        message += f" - Fields: {error['fields']}"
                raise DnsApiError(self.name, message, resp.status)

            if resp.status == 204 or not text:
                return None
            return await resp.json(content_type=None)

    def _to_godaddy(self, record: DnsRecord, zone: str) -> dict:
        gd_record = {
            "type": record.type,
            "name": relative_name(record.name, zone, apex="@"),
            "data": record.content,
            "ttl": max(record.ttl or self.DEFAULT_TTL, self.MIN_TTL),
        }
        if record.type in ("MX", "SRV") and record.priority is not None:
            gd_record["priority"] = record.priority
        return gd_record

    def _from_godaddy(self, gd_record: dict, zone: str) -> DnsRecord:
        return DnsRecord(
            name=fqdn(gd_record["name"], zone),
            type=gd_record["type"],
            content=gd_record["data"],
            ttl=gd_record.get("ttl"),
            priority=gd_record.get("priority"),
        )

    def _rrset_path(self, zone: str, record: DnsRecord) -> str:
        name = relative_name(record.name, zone, apex="@")
        return f"/v1/domains/{zone}/records/{record.type}/{name}"

    async def create_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        zone = root_domain(domain)
        try:
            await self._request(
                "PATCH",
                f"/v1/domains/{zone}/records",
                [self._to_godaddy(record, zone)],
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return CreateRecordResult(
                success=False, message=self._failure("create", record.name, e)
            )

        logger.debug("Added %s record %s in %s", record.type, record.name, zone)
        return CreateRecordResult(success=True, message="Record created successfully")

    async def upsert_record(
        self, domain: str, record: DnsRecord
    ) -> CreateRecordResult:
        zone = root_domain(domain)
        try:
            # PUT replaces every value of the record set.
            await self._request(
                "PUT", self._rrset_path(zone, record), [self._to_godaddy(record, zone)]
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return CreateRecordResult(
                success=False, message=self._failure("upsert", record.name, e)
            )

        logger.debug("Replaced %s record set %s in %s", record.type, record.name, zone)
        return CreateRecordResult(
            success=True, message="Record upserted successfully"
        )

    async def delete_record(
        self, domain: str, record: DnsRecord
    ) -> DeleteRecordResult:
        zone = root_domain(domain)
        path = self._rrset_path(zone, record)
        try:
            existing = await self._request("GET", path) or []
            remaining = [r for r in existing if r["data"] != record.content]

            if len(remaining) == len(existing):
                return DeleteRecordResult(success=False, message=RECORD_NOT_FOUND)

            if remaining:
                await self._request("PUT", path, remaining)
            else:
                await self._request("DELETE", path)
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return DeleteRecordResult(
                success=False, message=self._failure("delete", record.name, e)
            )

        logger.debug("Deleted %s record %s in %s", record.type, record.name, zone)
        return DeleteRecordResult(success=True, message="Record deleted successfully")

    async def list_records(
        self, domain: str, type_: typing.Optional[str] = None
    ) -> ListRecordsResult:
        zone = root_domain(domain)
        path = f"/v1/domains/{zone}/records"
        if type_:
            path += f"/{getattr(type_, 'value', type_)}"

        try:
            gd_records = await self._request("GET", path) or []
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            return ListRecordsResult(
                success=False, message=self._failure("list", domain, e)
            )

        return ListRecordsResult(
            success=True, records=[self._from_godaddy(r, zone) for r in gd_records]
        )

    async def can_manage_domain(self, domain: str) -> bool:
        try:
            await self._request("GET", f"/v1/domains/{root_domain(domain)}")
        except (aiohttp.ClientError, asyncio.TimeoutError, DnsApiError) as e:
            logger.debug("%s cannot manage %s: %s", self.name, domain, e)
            return False
        return True
