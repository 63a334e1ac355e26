"""User CRUD。"""

from __future__ import annotations

from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.user import User


class CRUDUser(CRUDBase[User]):
    def list_ids(self, db: Session) -> list[int]:
        return [row[0] for row in db.query(User.id).order_by(User.id.asc()).all()]


user_crud = CRUDUser(User)
