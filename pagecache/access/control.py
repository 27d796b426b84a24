"""Who may view a document: its owner, an admin, or a member holding a grant."""
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import Document, User, UserRole, BookShopItem, MyJstudyroomItem


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: UserRole = UserRole.member

    @property
    def is_admin(self):
        return self.role == UserRole.admin

    @classmethod
    def from_user(cls, user: User):
        return cls(user_id=user.id, role=UserRole(user.role))


class AccessControl:
    def __init__(self, session: Session):
        self.session = session

    def has_grant(self, user_id: str, document_id: str) -> bool:
        stmt = (
            select(MyJstudyroomItem.id)
            .join(BookShopItem, BookShopItem.id == MyJstudyroomItem.bookshop_item_id)
            .filter(MyJstudyroomItem.user_id == user_id, BookShopItem.document_id == document_id)
        )
        return self.session.execute(stmt).first() is not None

    def can_view(self, principal: Principal, document_id: str) -> bool:
        if principal is None:
            return False
        if principal.is_admin:
            return True
        doc = self.session.get(Document, document_id)
        if doc is None:
            return False
        if doc.user_id == principal.user_id:
            return True
        return self.has_grant(principal.user_id, document_id)

    def can_manage(self, principal: Principal, document_id: str) -> bool:
        """Owner or admin; grants give read access only."""
        if principal is None:
            return False
        if principal.is_admin:
            return True
        doc = self.session.get(Document, document_id)
        return doc is not None and doc.user_id == principal.user_id
