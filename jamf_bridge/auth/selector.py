from __future__ import annotations

import logging
from typing import Optional

from ..common.errors import AuthenticationRequired, JamfBridgeError, TransportError
from ..common.logging import log_event
from ..routing.families import EndpointFamily
from .tokens import Credential, CredentialKind, TokenStore

logger = logging.getLogger(__name__)

# Candidate order per family. Legacy never receives the OAuth2 token.
_PREFERENCE: dict[EndpointFamily, tuple[CredentialKind, ...]] = {
    EndpointFamily.MODERN: (CredentialKind.OAUTH2, CredentialKind.BASIC_DERIVED),
    EndpointFamily.LEGACY: (CredentialKind.BASIC_DERIVED,),
}


class CredentialSelector:
    def __init__(self, store: TokenStore) -> None:
        self._store = store

    def candidates(self, family: EndpointFamily) -> tuple[CredentialKind, ...]:
        return tuple(k for k in _PREFERENCE[family] if self._store.is_configured(k))

    async def get_credential(self, family: EndpointFamily) -> Credential:
        """
        Return the credential to attach for `family`.

        Raises AuthenticationRequired when no candidate kind is configured or
        every configured kind failed to authenticate.
        """
        kinds = self.candidates(family)
        if not kinds:
            raise AuthenticationRequired(f"No credential is configured for {family.value} endpoints")

        last_error: Optional[JamfBridgeError] = None
        for kind in kinds:
            try:
                return await self._store.get(kind)
            except JamfBridgeError as exc:
                last_error = exc
                log_event(
                    logger,
                    "auth.candidate_failed",
                    severity="WARNING",
                    family=family.value,
                    kind=kind.value,
                    error_code=exc.code,
                )

        if isinstance(last_error, TransportError):
            raise last_error
        raise AuthenticationRequired(
            f"No valid credential for {family.value} endpoints",
            status_code=getattr(last_error, "status_code", None),
        ) from last_error

    async def reauthenticate(self, family: EndpointFamily, rejected: Credential) -> Credential:
        """
        Called once per request after a 401. Refreshes the rejected kind and
        returns a credential that is again valid for `family`.
        """
        log_event(logger, "auth.reauthenticate", family=family.value, kind=rejected.kind.value)
        try:
            return await self._store.force_refresh(rejected.kind, stale=rejected)
        except JamfBridgeError:
            # The rejected kind cannot be renewed; the next candidate may still work.
            remaining = [k for k in self.candidates(family) if k != rejected.kind]
            for kind in remaining:
                try:
                    return await self._store.get(kind)
                except JamfBridgeError:
                    continue
            raise
