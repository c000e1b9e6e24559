from __future__ import annotations
from urllib.parse import quote

import httpx

from .. import config
from ..errors import FileNotFound, ProvisioningError
from ..infra.timings import timeit


class SupabaseStorage:
    """Signed URLs for objects in a private storage bucket."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str = config.SUPABASE_URL,
        service_key: str = config.SUPABASE_SERVICE_ROLE_KEY,
        bucket: str = config.STORAGE_BUCKET,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket

    async def sign(self, path: str, ttl_seconds: int) -> str:
        object_path = quote(path.lstrip("/"))
        try:
            async with timeit("storage.sign"):
                r = await self.http.post(
                    f"{self.base_url}/storage/v1/object/sign/"
                    f"{self.bucket}/{object_path}",
                    json={"expiresIn": int(ttl_seconds)},
                    headers={
                        "Authorization": f"Bearer {self.service_key}",
                        "apikey": self.service_key,
                    },
                    timeout=config.STORAGE_SIGN_TIMEOUT,
                )
        except httpx.HTTPError as e:
            raise ProvisioningError(
                f"signing {path} failed: {e.__class__.__name__}"
            ) from e
        # storage answers 400 "Object not found" as often as 404
        if r.status_code in (400, 404):
            raise FileNotFound(path)
        if r.status_code >= 300:
            raise ProvisioningError(
                f"signing {path} failed: HTTP {r.status_code}"
            )
        try:
            signed = r.json().get("signedURL") or ""
        except ValueError as e:
            raise ProvisioningError(f"signing {path} failed: invalid JSON") \
                from e
        if not signed:
            raise ProvisioningError(f"signing {path} returned no URL")
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"
