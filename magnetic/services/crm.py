"""ActiveCampaign v3 client: contacts and tags, enough to reconcile plan tags."""

import re

import httpx

from magnetic.core.config import get_settings
from magnetic.core.exceptions import BadRequestError, UpstreamProviderError
from magnetic.core.logging import get_logger

log = get_logger(__name__)

NUMERIC_TAG_RE = re.compile(r"^\d+$")


def parse_tag_inputs(value: str) -> list[str]:
    return [t.strip() for t in (value or "").split(",") if t.strip()]


class ActiveCampaignClient:
    def __init__(self, base_url: str, api_key: str, http: httpx.AsyncClient | None = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Api-Token": api_key, "Content-Type": "application/json"}

    @classmethod
    def from_settings(cls, http: httpx.AsyncClient | None = None) -> "ActiveCampaignClient":
        s = get_settings()
        if not s.activecampaign_api_url or not s.activecampaign_api_key:
            raise BadRequestError("ActiveCampaign not configured")
        return cls(s.activecampaign_api_url, s.activecampaign_api_key, http=http, timeout=s.activecampaign_timeout_seconds)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _get(self, path: str, params: dict | None = None) -> dict:
        url = f"{self.base_url}/api/3/{path}"
        try:
            resp = await self._http.get(url, params=params, headers=self._headers)
        except httpx.HTTPError as e:
            raise UpstreamProviderError(f"ActiveCampaign unreachable: {e}") from e
        if resp.status_code >= 400:
            raise UpstreamProviderError(
                f"ActiveCampaign API error {resp.status_code}",
                details={"path": path, "body": resp.text[:500]},
            )
        return resp.json()

    async def find_contact_id(self, email: str) -> str | None:
        data = await self._get("contacts", {"email": email})
        contacts = data.get("contacts") or []
        return str(contacts[0]["id"]) if contacts else None

    async def contact_tag_ids(self, contact_id: str) -> set[str]:
        data = await self._get(f"contacts/{contact_id}/contactTags")
        return {str(ct.get("tag")) for ct in data.get("contactTags") or [] if ct.get("tag") is not None}

    async def resolve_tag_ids(self, tag_input: str) -> set[str]:
        """Numeric ids are taken as-is; names are searched, exact (case-insensitive) match first."""
        ids: set[str] = set()
        for value in parse_tag_inputs(tag_input):
            if NUMERIC_TAG_RE.match(value):
                ids.add(value)
                continue
            data = await self._get("tags", {"search": value})
            tags = data.get("tags") or []
            needle = value.lower()
            match = next((t for t in tags if (t.get("tag") or "").lower() == needle), None)
            if match is None and tags:
                match = tags[0]
            if match and match.get("id"):
                ids.add(str(match["id"]))
            else:
                log.warning("crm_tag_not_found", tag=value)
        return ids
