import logging
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cafe_pos import models
from cafe_pos.database import as_utc
from cafe_pos.errors import Result
from cafe_pos.schemas import Role, UserProfile
from cafe_pos.stores import RemoteStore

logger = logging.getLogger(__name__)


def load_profile(db: Session, user_id: str) -> Optional[UserProfile]:
    profile = db.query(models.Profile).filter(models.Profile.id == user_id).first()
    if profile is None:
        return None
    assignment = db.query(models.UserRole).filter(models.UserRole.user_id == user_id).first()
    return UserProfile(
        id=profile.id,
        username=profile.username,
        role=Role(assignment.role) if assignment else None,
        created_at=as_utc(profile.created_at),
    )


def ensure_profile(db: Session, user_id: str, username: str, role: Optional[Role] = None):
    """Creates the profile (and role) rows if missing. Commits."""
    profile = db.query(models.Profile).filter(models.Profile.id == user_id).first()
    if profile is None:
        db.add(models.Profile(id=user_id, username=username))
        db.flush()
    if role is not None:
        assignment = db.query(models.UserRole).filter(models.UserRole.user_id == user_id).first()
        if assignment is None:
            db.add(models.UserRole(user_id=user_id, role=role.value))
    db.commit()


def search_users(users: List[UserProfile], query: str) -> List[UserProfile]:
    needle = (query or "").strip().lower()
    if not needle:
        return list(users)
    return [u for u in users if needle in u.username.lower()]


class UserRoleStore(RemoteStore):

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.users: List[UserProfile] = []

    def list(self) -> Result:
        db = self.session_factory()
        try:
            profiles = db.query(models.Profile).order_by(models.Profile.username.asc()).all()
            assignments = db.query(models.UserRole).all()
            roles = {a.user_id: Role(a.role) for a in assignments}
            users = [
                UserProfile(
                    id=p.id,
                    username=p.username,
                    role=roles.get(p.id),
                    created_at=as_utc(p.created_at),
                )
                for p in profiles
            ]
        except (SQLAlchemyError, ValueError) as e:
            return self._failure("Erreur lors du chargement des utilisateurs", e)
        finally:
            db.close()
            self.loading = False

        self.users = users
        return Result.success(value=users)

    def set_role(self, user_id: str, role) -> Result:
        try:
            role = Role(role)
        except ValueError as e:
            return self._invalid(e)

        db = self.session_factory()
        try:
            existing = db.query(models.UserRole).filter(models.UserRole.user_id == user_id).first()
            if existing:
                existing.role = role.value
            else:
                db.add(models.UserRole(user_id=user_id, role=role.value))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la mise à jour du rôle", e)
        finally:
            db.close()

        logger.info(f"Role of user {user_id} set to {role.value}")
        self.list()
        return Result.success("Rôle mis à jour")

    def remove_role(self, user_id: str) -> Result:
        db = self.session_factory()
        try:
            db.query(models.UserRole).filter(models.UserRole.user_id == user_id).delete()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            return self._failure("Erreur lors de la suppression du rôle", e)
        finally:
            db.close()

        self.list()
        return Result.success("Rôle supprimé")
