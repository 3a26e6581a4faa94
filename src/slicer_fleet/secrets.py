"""Secret Store Client - secrets injected into VMs.

Reads return metadata only. The value of a secret is write-only and is not
part of any model returned by this client.
"""

from __future__ import annotations

import logging
from typing import List
from urllib.parse import quote

from slicer_fleet.errors import NotFoundError, ValidationError
from slicer_fleet.models import Secret, SecretCreate, SecretPatch, parse_many
from slicer_fleet.session import TransportSession, read_json

logger = logging.getLogger(__name__)


class SecretStoreClient:
    """Create, patch, delete and list secrets."""

    def __init__(self, session: TransportSession) -> None:
        self._session = session

    async def create_secret(self, secret: SecretCreate) -> None:
        """Create a secret.

        Raises:
            ConflictError: A secret with that name already exists.
        """
        logger.debug(f"Creating secret {secret.name}")
        await self._session.request(
            "POST",
            "/secrets",
            action=f"create secret {secret.name}",
            json=secret.model_dump(),
        )
        logger.info(f"Created secret {secret.name}")

    async def patch_secret(self, name: str, patch: SecretPatch) -> None:
        """Update the value and/or ownership and permissions of a secret.

        Raises:
            ValidationError: The patch sets nothing.
            NotFoundError: No secret has that name.
        """
        payload = patch.to_payload()
        if not payload:
            raise ValidationError(f"Nothing to update for secret {name}")

        logger.debug(f"Updating secret {name}: {sorted(k for k in payload if k != 'data')}")
        await self._session.request(
            "PATCH",
            f"/secrets/{quote(name, safe='')}",
            action=f"update secret {name}",
            json=payload,
        )
        logger.info(f"Updated secret {name}")

    async def delete_secret(self, name: str) -> None:
        """Delete a secret.

        Raises:
            NotFoundError: No secret has that name.
        """
        logger.debug(f"Deleting secret {name}")
        await self._session.request(
            "DELETE",
            f"/secrets/{quote(name, safe='')}",
            action=f"delete secret {name}",
        )
        logger.info(f"Deleted secret {name}")

    async def list_secrets(self) -> List[Secret]:
        """Metadata of every secret."""
        response = await self._session.request("GET", "/secrets", action="list secrets")
        return parse_many(Secret, read_json(response, "list secrets"), "list secrets")

    async def get_secret(self, name: str) -> Secret:
        """Metadata of one secret.

        Raises:
            NotFoundError: No secret has that name.
        """
        for secret in await self.list_secrets():
            if secret.name == name:
                return secret
        raise NotFoundError(f"Secret not found: {name}", status_code=404)
