from __future__ import annotations


UNIQUE_VIOLATION_CODE = "23505"


class ChatSyncError(Exception):
    pass


class NotReady(ChatSyncError):
    """A precondition is unmet: no identity, no display name, or empty body."""


class InvalidName(NotReady):
    pass


class Conflict(ChatSyncError):
    pass


class NameTaken(Conflict):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"display name already taken: {name}")


class IdentityAlreadyNamed(Conflict):
    def __init__(self, identity: str, name: str) -> None:
        self.identity = identity
        self.name = name
        super().__init__(f"identity already has a display name: {name}")


class WriteFailed(ChatSyncError):
    pass


class ReadFailed(ChatSyncError):
    pass


class StoreError(Exception):
    """Raised by store collaborators when an operation is rejected."""

    code: str | None = None


class UniqueViolation(StoreError):
    code = UNIQUE_VIOLATION_CODE

    def __init__(self, message: str, *, constraint: str | None = None) -> None:
        self.constraint = constraint
        super().__init__(message)


class UnqualifiedDelete(StoreError):
    code = "unqualified_delete"
