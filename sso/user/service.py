"""
User registration and deletion.
"""

from loguru import logger

from sso.constants import MIN_PASSWORD_LENGTH
from sso.exceptions import UsernameTakenError, WeakPasswordError
from sso.password import hash_password
from sso.user.repository import UserRepository
from sso.user.schemas import User


class UserService:
    def __init__(self, repo: UserRepository):
        self.repo = repo

    async def register(self, username: str, email: str, password: str) -> User:
        if await self.repo.by_username(username):
            raise UsernameTakenError(f"Username {username!r} is already taken")
        if len(password or "") < MIN_PASSWORD_LENGTH:
            raise WeakPasswordError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )
        user = await self.repo.create(username, email, hash_password(password))
        logger.success(f"Registered user {user.user_id} ({username})")
        return user

    async def delete(self, user_id: str):
        """Delete the user and their sessions; deleting twice is not an error."""
        if await self.repo.delete(user_id):
            logger.info(f"Deleted user {user_id}")
