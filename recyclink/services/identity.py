from typing import Protocol

from recyclink.models.chat import UserProfile


class Identity(Protocol):
    def current_user(self) -> UserProfile | None: ...


class StaticIdentity:
    """Holds the user signed in through the identity provider for one session."""

    def __init__(self, user: UserProfile | None = None):
        self._user = user

    def current_user(self) -> UserProfile | None:
        return self._user
