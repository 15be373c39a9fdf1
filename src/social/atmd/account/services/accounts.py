import logging

from social.atmd.account.entities import Profile, ProfileUpdate, User
from social.atmd.account.errors import (
    AccountError,
    DeleteFailed,
    RepositoryError,
    RepositoryErrorCode,
    SessionRevocationFailed,
    UpdateFailed,
    UserNotFound,
)
from social.atmd.account.ports import (
    ConnectionRepository,
    IdentityProvider,
    SessionContext,
    UserRepository,
)
from social.atmd.account.result import Err, Ok, Result
from social.atmd.account.session import SessionManager

logger = logging.getLogger(__name__)


class AccountManager:
    """Profile queries and mutations, account deletion and logout."""

    def __init__(
        self,
        user_repository: UserRepository,
        connection_repository: ConnectionRepository,
        identity_provider: IdentityProvider,
        session_manager: SessionManager,
    ) -> None:
        self.user_repository = user_repository
        self.connection_repository = connection_repository
        self.identity_provider = identity_provider
        self.session_manager = session_manager

    def _lookup_failure(self, error: RepositoryError) -> AccountError:
        if error.code == RepositoryErrorCode.NOT_FOUND:
            return UserNotFound("no such user", error)
        logger.error("%s %s", UserNotFound.code, error)
        return UserNotFound("unable to load user", error)

    async def get_user_by_id(self, user_id: str) -> Result[User, AccountError]:
        find_result = await self.user_repository.find_by_id(user_id)
        if isinstance(find_result, Err):
            return Err(self._lookup_failure(find_result.error))
        return find_result

    async def get_user_by_did(self, did: str) -> Result[User, AccountError]:
        find_result = await self.user_repository.find_by_did(did)
        if isinstance(find_result, Err):
            return Err(self._lookup_failure(find_result.error))
        return find_result

    async def _save_profile(self, user: User, profile: Profile) -> Result[User, AccountError]:
        update_result = await self.user_repository.update(
            user.model_copy(update={"profile": profile})
        )
        if isinstance(update_result, Err):
            if update_result.error.code == RepositoryErrorCode.NOT_FOUND:
                return Err(UserNotFound("no such user", update_result.error))
            logger.error("%s %s", UpdateFailed.code, update_result.error)
            return Err(UpdateFailed("unable to save profile", update_result.error))
        return update_result

    async def update_profile(
        self, user_id: str, changes: ProfileUpdate
    ) -> Result[User, AccountError]:
        """Apply a partial edit to the stored profile."""
        user_result = await self.get_user_by_id(user_id)
        if isinstance(user_result, Err):
            return user_result
        user = user_result.value
        return await self._save_profile(user, changes.apply(user.profile))

    async def sync_profile(self, user_id: str) -> Result[User, AccountError]:
        """Replace the stored profile with the one the identity provider publishes."""
        user_result = await self.get_user_by_id(user_id)
        if isinstance(user_result, Err):
            return user_result
        user = user_result.value

        profile_result = await self.identity_provider.get_user_profile(user.did)
        if isinstance(profile_result, Err):
            logger.info("%s %s", UpdateFailed.code, profile_result.error)
            return Err(UpdateFailed("unable to fetch profile", profile_result.error))
        return await self._save_profile(user, profile_result.value)

    async def delete_user(self, user_id: str) -> Result[None, AccountError]:
        """Delete the user and their GitHub connection. Deleting twice is not an error."""
        disconnect_result = await self.connection_repository.delete_by_user_id(user_id)
        if (
            isinstance(disconnect_result, Err)
            and disconnect_result.error.code != RepositoryErrorCode.NOT_FOUND
        ):
            logger.error("%s %s", DeleteFailed.code, disconnect_result.error)
            return Err(
                DeleteFailed("unable to remove GitHub connection", disconnect_result.error)
            )

        delete_result = await self.user_repository.delete(user_id)
        if isinstance(delete_result, Err):
            if delete_result.error.code == RepositoryErrorCode.NOT_FOUND:
                return Ok(None)
            logger.error("%s %s", DeleteFailed.code, delete_result.error)
            return Err(DeleteFailed("unable to delete user", delete_result.error))

        logger.info("deleted user %s", user_id)
        return delete_result

    async def logout(self, context: SessionContext) -> Result[None, AccountError]:
        remove_result = await self.session_manager.remove(context)
        if isinstance(remove_result, Err):
            return Err(SessionRevocationFailed("unable to end session", remove_result.error))
        return remove_result
