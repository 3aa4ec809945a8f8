"""Actors and their capabilities over a job.

Handlers never compare role strings. The escrow state machine asks the
actor whether it may perform an action on a specific job.
"""

import uuid

from app.models.job import Job
from app.models.user import User, UserRole


class Actor:
    """An authenticated user acting on the marketplace. Denies everything by default."""

    def __init__(self, user: User) -> None:
        self.user = user

    @property
    def user_id(self) -> uuid.UUID:
        return self.user.user_id

    def _is_poster(self, job: Job) -> bool:
        return job.posted_by_id == self.user_id

    def _is_hired(self, job: Job) -> bool:
        return job.hired_provider_id is not None and job.hired_provider_id == self.user_id

    def can_view(self, job: Job) -> bool:
        return self._is_poster(job) or self._is_hired(job)

    def can_hire(self, job: Job) -> bool:
        return False

    def can_complete(self, job: Job) -> bool:
        return False

    def can_cancel(self, job: Job) -> bool:
        return False

    def can_refund(self, job: Job) -> bool:
        return False

    def can_view_account(self, user_id: uuid.UUID) -> bool:
        return user_id == self.user_id

    def can_manage_settings(self) -> bool:
        return False


class Buyer(Actor):
    def can_hire(self, job: Job) -> bool:
        return self._is_poster(job)

    def can_complete(self, job: Job) -> bool:
        return self._is_poster(job)

    def can_cancel(self, job: Job) -> bool:
        return self._is_poster(job)


class Seller(Actor):
    # Providers may also post jobs of their own.
    def can_hire(self, job: Job) -> bool:
        return self._is_poster(job)

    def can_complete(self, job: Job) -> bool:
        return self._is_poster(job) or self._is_hired(job)

    def can_cancel(self, job: Job) -> bool:
        return self._is_poster(job)


class Admin(Actor):
    def can_view(self, job: Job) -> bool:
        return True

    def can_hire(self, job: Job) -> bool:
        return True

    def can_complete(self, job: Job) -> bool:
        return True

    def can_cancel(self, job: Job) -> bool:
        return True

    def can_refund(self, job: Job) -> bool:
        return True

    def can_view_account(self, user_id: uuid.UUID) -> bool:
        return True

    def can_manage_settings(self) -> bool:
        return True


_ROLE_ACTORS: dict[UserRole, type[Actor]] = {
    UserRole.BUYER: Buyer,
    UserRole.SELLER: Seller,
    UserRole.ADMIN: Admin,
}


def actor_for(user: User) -> Actor:
    return _ROLE_ACTORS[user.role](user)
