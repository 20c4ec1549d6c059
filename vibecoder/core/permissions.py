from sqlalchemy.orm import Session

from vibecoder.core.errors import Forbidden, NotFound
from vibecoder.models.project import Project
from vibecoder.models.transaction import Transaction
from vibecoder.models.user import User


def require_transaction_party(tx: Transaction, user: User) -> Transaction:
    if user.is_admin or user.id in (tx.buyer_id, tx.seller_id):
        return tx
    raise Forbidden("You do not have access to this transaction")


def require_buyer_or_admin(tx: Transaction, user: User) -> Transaction:
    if user.is_admin or user.id == tx.buyer_id:
        return tx
    raise Forbidden("You do not have access to this transaction")


def require_project_owner(db: Session, user: User, project_id: str) -> Project:
    project = db.get(Project, project_id)
    if not project:
        raise NotFound("Project not found")
    if not user.is_admin and project.seller_id != user.id:
        raise Forbidden("Project not found or access denied")
    return project
