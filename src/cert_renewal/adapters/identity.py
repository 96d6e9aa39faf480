"""Identity adapter for a subject that was authenticated upstream."""

from __future__ import annotations

from railway import ResultFailures
from railway.result import Result

from cert_renewal.domain.models import CurrentUser


class StaticIdentityProvider:
    """
    Implements the IdentityProvider port with a fixed subject.

    ``None`` models a signed-out session.
    """

    def __init__(self, user: CurrentUser | None) -> None:
        self._user = user

    async def get_current_user(self) -> Result[CurrentUser]:
        if self._user is None:
            return ResultFailures.authentication_error("No signed-in user")
        return Result.success(self._user)
