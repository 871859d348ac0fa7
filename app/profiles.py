"""
Best-effort profile and group-info lookups against the channel provider.

Every call is bounded by a timeout and every failure is converted to
LookupResult.missing() here, so identity resolution never depends on the
provider being reachable.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from app.config import settings
from app.errors import UpstreamError
from app.metrics import record_profile_lookup
from app.models import Instance
from app.utils import digits_only

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LookupResult:
    """Outcome of an enrichment lookup. Callers must check ``found``."""
    found: bool
    name: Optional[str] = None
    avatar_url: Optional[str] = None

    @classmethod
    def missing(cls) -> "LookupResult":
        return cls(found=False)


def _first_record(data):
    # The provider answers with either an object or a one-element list
    if isinstance(data, list):
        return data[0] if data and isinstance(data[0], dict) else {}
    return data if isinstance(data, dict) else {}


class ProfileLookup:
    def __init__(
        self,
        timeout: float,
        enabled: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout = timeout
        self.enabled = enabled
        self._transport = transport

    def _post(self, instance: Instance, path: str, body: dict) -> dict:
        url = f"{instance.server_url.rstrip('/')}{path}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    url,
                    json=body,
                    headers={"Accept": "application/json", "token": instance.credential or ""},
                )
                response.raise_for_status()
                return _first_record(response.json())
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise UpstreamError(f"lookup {path} failed: {e}") from e

    def _lookup(self, instance: Instance, path: str, body: dict, name_keys: tuple) -> LookupResult:
        if not self.enabled or not instance.server_url:
            record_profile_lookup("skipped")
            return LookupResult.missing()

        try:
            record = self._post(instance, path, body)
        except UpstreamError as e:
            logger.warning(f"Profile lookup failed, keeping stored values: {e.detail}")
            record_profile_lookup("failed")
            return LookupResult.missing()
        except Exception:
            logger.exception(f"Unexpected error during profile lookup {path} for instance {instance.name}")
            record_profile_lookup("failed")
            return LookupResult.missing()

        name = next((record[key] for key in name_keys if record.get(key)), None)
        avatar_url = record.get("image") or record.get("imagePreview") or record.get("profilePictureUrl")
        if not name and not avatar_url:
            record_profile_lookup("missing")
            return LookupResult.missing()

        record_profile_lookup("found")
        return LookupResult(found=True, name=name, avatar_url=avatar_url)

    def contact_profile(self, instance: Instance, remote_id: str) -> LookupResult:
        return self._lookup(
            instance,
            "/chat/details",
            {"number": digits_only(remote_id), "preview": False},
            ("name", "wa_name", "wa_contactName"),
        )

    def group_profile(self, instance: Instance, remote_id: str) -> LookupResult:
        return self._lookup(
            instance,
            "/group/info",
            {"groupjid": remote_id, "getInviteLink": False},
            ("Name", "name", "subject"),
        )


def get_profile_lookup() -> ProfileLookup:
    """FastAPI dependency providing the configured lookup client."""
    return ProfileLookup(
        timeout=settings.PROFILE_LOOKUP_TIMEOUT_SECONDS,
        enabled=settings.PROFILE_LOOKUP_ENABLED,
    )
