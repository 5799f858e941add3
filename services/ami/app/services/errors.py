from __future__ import annotations


class CommandServiceError(Exception):
    """Base class for command dispatch and prepaid ledger errors."""


class ValidationError(CommandServiceError):
    """Malformed or empty input. The caller must correct it before retrying."""


class NotFoundError(CommandServiceError):
    def __init__(self, entity: str, entity_id: object) -> None:
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(CommandServiceError):
    def __init__(self, entity: str, entity_id: object, state: object, expected: str) -> None:
        state_value = getattr(state, "value", state)
        super().__init__(
            f"{entity} {entity_id} is in state {state_value}; expected {expected}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.state = state


class ConcurrentModificationError(CommandServiceError):
    """An optimistic-lock conflict. The caller should retry the whole operation."""


class AuthorizationError(CommandServiceError):
    def __init__(self, identity: str, permission: str) -> None:
        super().__init__(f"{identity!r} is not allowed to {permission}")
        self.identity = identity
        self.permission = permission
