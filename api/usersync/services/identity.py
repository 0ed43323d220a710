from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Protocol

import httpx

from usersync.core.config import get_settings

logger = logging.getLogger(__name__)


class IdentityStoreError(Exception):
    """Raised when the Supabase auth admin API rejects or fails a call."""


class IdentityStore(Protocol):
    enabled: bool

    async def create_user(self, *, email: str, metadata: dict[str, Any]) -> dict[str, Any]: ...

    async def find_user_by_email(self, email: str) -> dict[str, Any] | None: ...

    async def update_user(self, user_id: str, *, email: str | None, metadata: dict[str, Any]) -> dict[str, Any]: ...

    async def delete_user(self, user_id: str) -> None: ...


class DisabledIdentityStore:
    """Stand-in used when Supabase credentials are not configured."""

    enabled = False

    async def create_user(self, *, email: str, metadata: dict[str, Any]) -> dict[str, Any]:
        return {"skipped": True}

    async def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        return None

    async def update_user(self, user_id: str, *, email: str | None, metadata: dict[str, Any]) -> dict[str, Any]:
        return {"skipped": True}

    async def delete_user(self, user_id: str) -> None:
        return None


class SupabaseAuthAdmin:
    enabled = True

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        timeout_seconds: float = 10.0,
        page_size: int = 200,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = f"{supabase_url.rstrip('/')}/auth/v1/admin/users"
        self.headers = {
            "Authorization": f"Bearer {service_role_key}",
            "apikey": service_role_key,
        }
        self.timeout_seconds = timeout_seconds
        self.page_size = max(1, page_size)
        self._client = client

    async def create_user(self, *, email: str, metadata: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST",
            self.base_url,
            json={"email": email, "email_confirm": True, "user_metadata": metadata},
        )

    async def find_user_by_email(self, email: str) -> dict[str, Any] | None:
        target = email.strip().lower()
        page = 1
        while True:
            body = await self._request("GET", self.base_url, params={"page": page, "per_page": self.page_size})
            users = body.get("users") if isinstance(body, dict) else None
            if not isinstance(users, list) or not users:
                return None
            for user in users:
                if isinstance(user, dict) and str(user.get("email") or "").lower() == target:
                    return user
            if len(users) < self.page_size:
                return None
            page += 1

    async def update_user(self, user_id: str, *, email: str | None, metadata: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {"user_metadata": metadata}
        if email:
            payload["email"] = email
        return await self._request("PUT", f"{self.base_url}/{user_id}", json=payload)

    async def delete_user(self, user_id: str) -> None:
        await self._request("DELETE", f"{self.base_url}/{user_id}")

    async def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=self.headers, **kwargs)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.request(method, url, headers=self.headers, **kwargs)
        except httpx.HTTPError as exc:
            raise IdentityStoreError(f"supabase auth admin unavailable: {exc}") from exc

        if response.status_code >= 400:
            raise IdentityStoreError(
                f"supabase auth admin {method} failed status={response.status_code} body={response.text[:200]}"
            )
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}


@lru_cache
def get_identity_store() -> IdentityStore:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        logger.info("Supabase auth admin not configured; identity store sync disabled")
        return DisabledIdentityStore()
    return SupabaseAuthAdmin(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        timeout_seconds=settings.identity_timeout_seconds,
        page_size=settings.identity_page_size,
    )
