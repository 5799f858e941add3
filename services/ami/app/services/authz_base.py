from __future__ import annotations

from typing import Protocol

PERMISSION_CREATE_COMMAND = "commands.create"
PERMISSION_APPROVE_COMMAND = "commands.approve"
PERMISSION_APPROVE_IMPORT = "imports.approve"


class Authorizer(Protocol):
    name: str

    def is_allowed(self, identity: str, permission: str) -> bool: ...
