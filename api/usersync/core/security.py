import binascii
import hashlib
import hmac
import json
from collections.abc import Mapping

from fastapi import Depends, Header, HTTPException, status
from svix.webhooks import Webhook
from svix.webhooks import WebhookVerificationError as SvixVerificationError

from usersync.core.auth import PROCESSOR_SCOPES, Principal, PrincipalType
from usersync.core.config import Settings, get_settings

SVIX_HEADERS = ("svix-id", "svix-timestamp", "svix-signature")


class WebhookVerificationError(Exception):
    """Raised when an inbound webhook cannot be authenticated."""


async def get_machine_principal(
    settings: Settings = Depends(get_settings),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    x_module_id: str | None = Header(default=None, alias="X-Module-Id"),
) -> Principal:
    if not x_api_key or not x_module_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"machine auth requires {settings.api_key_header} and X-Module-Id",
        )

    if not settings.processor_api_key_hash:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="processor credentials are not configured",
        )

    key_hash = hashlib.sha256(x_api_key.encode("utf-8")).hexdigest()
    module_matches = hmac.compare_digest(x_module_id, settings.processor_module_id)
    key_matches = hmac.compare_digest(key_hash, settings.processor_api_key_hash)
    if not (module_matches and key_matches):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid module credentials")

    return Principal(
        principal_type=PrincipalType.MACHINE,
        subject=x_module_id,
        scopes=set(PROCESSOR_SCOPES),
    )


def verify_svix_signature(secret: str | None, headers: Mapping[str, str], body: bytes) -> None:
    """Authenticate a Svix-signed delivery or raise ``WebhookVerificationError``.

    Signature matching and the five minute timestamp window are left to
    ``svix.webhooks.Webhook``. Parsing the body stays with the caller, so a
    correctly signed body that is not JSON passes here.
    """
    if not secret:
        raise WebhookVerificationError("webhook secret is not configured")

    try:
        webhook = Webhook(secret)
    except (binascii.Error, ValueError) as exc:
        raise WebhookVerificationError("webhook secret is not valid base64") from exc

    try:
        webhook.verify(body, dict(headers))
    except SvixVerificationError as exc:
        raise WebhookVerificationError(str(exc)) from exc
    except json.JSONDecodeError:
        return
    except ValueError as exc:
        raise WebhookVerificationError("malformed svix headers") from exc
