import logging
import time
from typing import Iterable, Optional

import httpx

from campuslib.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class Authorizer:
    """Answers "may this caller run circulation operations?"."""

    async def is_authorized(self, actor_id: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class StaticAuthorizer(Authorizer):
    """Trusts a fixed list of actor ids (used when no identity service is configured)."""

    def __init__(self, allowed: Iterable[str]) -> None:
        self.allowed = {a.strip() for a in allowed if a and a.strip()}

    async def is_authorized(self, actor_id: str) -> bool:
        return bool(actor_id) and actor_id.strip() in self.allowed


class IdentityService(Authorizer):
    """Role check against the identity service's ``has_role`` RPC.

    Any transport error, timeout or non-200 answer counts as "not authorized".
    """

    def __init__(self, base_url: str, api_key: Optional[str] = None, role: str = "admin",
                 timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.role = role
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, cfg: Settings) -> "IdentityService":
        return cls(
            base_url=cfg.identity_service_url,
            api_key=cfg.identity_service_key,
            role=cfg.circulation_role,
            timeout=cfg.identity_timeout,
        )

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["apikey"] = self.api_key
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, client: httpx.AsyncClient, url: str, payload: dict) -> httpx.Response:
        return await client.post(url, json=payload, headers=self._headers())

    async def has_role(self, user_id: str, role: Optional[str] = None) -> bool:
        url = f"{self.base_url}/rpc/has_role"
        payload = {"_user_id": user_id, "_role": role or self.role}
        start_time = time.time()
        try:
            if self._client is not None:
                response = await self._post(self._client, url, payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await self._post(client, url, payload)
        except httpx.TimeoutException:
            logger.error(f"Role check timed out after {self.timeout}s")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Role check failed: {e}")
            return False

        response_time_ms = int((time.time() - start_time) * 1000)
        if response.status_code != 200:
            logger.warning(f"Role check refused: {response.status_code} - {response.text}")
            return False
        try:
            granted = response.json() is True
        except ValueError:
            logger.error(f"Role check returned a non-JSON body: {response.text!r}")
            return False
        logger.info(f"Role check for {user_id}: role={payload['_role']} granted={granted} ({response_time_ms}ms)")
        return granted

    async def is_authorized(self, actor_id: str) -> bool:
        if not actor_id or not actor_id.strip():
            return False
        return await self.has_role(actor_id.strip())


def build_authorizer(cfg: Optional[Settings] = None) -> Authorizer:
    cfg = cfg or default_settings
    if cfg.identity_service_url:
        return IdentityService.from_settings(cfg)
    return StaticAuthorizer(cfg.circulation_admins)
