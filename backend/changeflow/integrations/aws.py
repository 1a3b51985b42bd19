"""
Per-tenant AWS credentials.

Tenants that keep their email resources in their own account expose a
role the engine assumes. Credentials are cached per role until shortly
before they expire, so a burst of events does not hammer STS.

Invariants:
    - Credentials for one tenant are never used for another
    - Tenants without a role use the engine's default credential chain
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import ClientError

from ..errors import TransientError, aws_error_code, classify
from ..tenants import TenantContext

logger = logging.getLogger(__name__)

REFRESH_MARGIN_SECONDS = 300


class CredentialError(TransientError):
    """Assuming a tenant role failed."""

    def __init__(self, message: str, tenant_code: str, retryable: bool = True) -> None:
        super().__init__(message, code="CREDENTIALS", details={"tenant_code": tenant_code})
        self.retryable = retryable


class TenantCredentialProvider:
    """Resolves client keyword arguments for acting as a tenant."""

    def __init__(self, session_name: str = "changeflow", call_timeout: float = 10.0) -> None:
        self.session_name = session_name
        self.call_timeout = call_timeout
        self._session = get_session()
        self._cache: dict[str, tuple[dict[str, Any], float]] = {}
        self._lock = asyncio.Lock()

    @property
    def session(self):
        return self._session

    async def client_kwargs(self, tenant: TenantContext) -> dict[str, Any]:
        """Return ``create_client`` kwargs (region and credentials) for a tenant."""
        kwargs: dict[str, Any] = {"region_name": tenant.region}
        if not tenant.role_arn:
            return kwargs
        kwargs.update(await self._assume(tenant))
        return kwargs

    async def _assume(self, tenant: TenantContext) -> dict[str, Any]:
        async with self._lock:
            cached = self._cache.get(tenant.role_arn)
            if cached is not None and cached[1] - REFRESH_MARGIN_SECONDS > time.time():
                return cached[0]
            try:
                async with self._session.create_client("sts", region_name=tenant.region) as sts:
                    response = await asyncio.wait_for(
                        sts.assume_role(
                            RoleArn=tenant.role_arn,
                            RoleSessionName=f"{self.session_name}-{tenant.tenant_code}"[:64],
                        ),
                        timeout=self.call_timeout,
                    )
            except asyncio.TimeoutError as e:
                raise CredentialError(f"AssumeRole timed out for {tenant.role_arn}", tenant.tenant_code) from e
            except ClientError as e:
                raise CredentialError(
                    f"AssumeRole failed for {tenant.role_arn}: {aws_error_code(e)}",
                    tenant.tenant_code,
                    retryable=classify(e),
                ) from e

            creds = response["Credentials"]
            kwargs = {
                "aws_access_key_id": creds["AccessKeyId"],
                "aws_secret_access_key": creds["SecretAccessKey"],
                "aws_session_token": creds["SessionToken"],
            }
            self._cache[tenant.role_arn] = (kwargs, creds["Expiration"].timestamp())
            logger.debug("Assumed tenant role", extra={"tenant_code": tenant.tenant_code})
            return kwargs
