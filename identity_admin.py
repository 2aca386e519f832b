"""
Identity-provider directory client.

Used when an admin hard-deletes a user: the portal record is removed first,
then the matching directory account is deleted through Microsoft Graph.
Directory deletion is best-effort and reports its outcome instead of raising.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
TIMEOUT = 15


class IdentityDirectory:
    def __init__(self, tenant_id: str = "", client_id: str = "", client_secret: str = "",
                 tenant_domain: str = "", session: requests.Session | None = None):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.tenant_domain = tenant_domain
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    def _access_token(self) -> str:
        resp = self.session.post(
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": "https://graph.microsoft.com/.default",
            },
            timeout=TIMEOUT,
        )
        resp.raise_for_status()
        return resp.json()["access_token"]

    def _find_user_id(self, email: str, headers: dict[str, str]) -> str | None:
        escaped = email.replace("'", "''")
        flt = (
            f"mail eq '{escaped}' or userPrincipalName eq '{escaped}' or "
            f"identities/any(i:i/issuerAssignedId eq '{escaped}' and i/issuer eq '{self.tenant_domain}')"
        )
        resp = self.session.get(
            f"{GRAPH_URL}/users",
            params={"$filter": flt, "$select": "id"},
            headers=headers,
            timeout=TIMEOUT,
        )
        resp.raise_for_status()
        users = resp.json().get("value", [])
        return users[0]["id"] if users else None

    def delete_user(self, email: str) -> dict[str, Any]:
        """Delete the directory account for ``email``."""
        if not self.configured:
            return {"deleted": False, "reason": "Identity provider not configured"}
        try:
            headers = {"Authorization": f"Bearer {self._access_token()}"}
            user_id = self._find_user_id(email, headers)
            if not user_id:
                return {"deleted": False, "reason": "User not found in identity provider"}
            resp = self.session.delete(
                f"{GRAPH_URL}/users/{quote(user_id)}", headers=headers, timeout=TIMEOUT,
            )
            resp.raise_for_status()
        except (requests.RequestException, KeyError, ValueError) as e:
            logger.warning("Identity provider deletion failed for %s: %s", email, e)
            return {"deleted": False, "reason": str(e)}
        logger.info("Deleted identity provider account for %s", email)
        return {"deleted": True}
