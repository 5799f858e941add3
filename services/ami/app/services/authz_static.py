from __future__ import annotations

from services.ami.app.services.authz_base import Authorizer


class AllowAllAuthorizer(Authorizer):
    """Grants every permission to any non-blank identity.

    Used for local dev and tests, where identities come from a trusted caller.
    """

    name = "ALLOW_ALL"

    def is_allowed(self, identity: str, permission: str) -> bool:
        del permission
        return bool((identity or "").strip())
