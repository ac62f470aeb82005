from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.engine import Connection

from expense_ledger.db import members
from expense_ledger.errors import Forbidden

MANAGER_ROLES = frozenset({"owner", "admin"})


def get_member_role(conn: Connection, organization_id: int, user_id: int) -> str | None:
    return conn.execute(
        select(members.c.role).where(
            members.c.organization_id == organization_id,
            members.c.user_id == user_id,
        )
    ).scalar_one_or_none()


def require_member(conn: Connection, organization_id: int, user_id: int) -> str:
    role = get_member_role(conn, organization_id, user_id)
    if role is None:
        raise Forbidden("Not a member of this workspace.")
    return role


def require_manager(conn: Connection, organization_id: int, user_id: int, action: str) -> str:
    """Require an owner or admin role; ``action`` completes "Only owners and admins can ..."."""
    role = require_member(conn, organization_id, user_id)
    if role not in MANAGER_ROLES:
        raise Forbidden(f"Only owners and admins can {action}.")
    return role


def list_member_emails(conn: Connection, organization_id: int) -> list[str]:
    rows = conn.execute(
        select(members.c.email)
        .where(members.c.organization_id == organization_id, members.c.email.isnot(None))
        .order_by(members.c.id.asc())
    ).all()
    return [row[0] for row in rows if row[0]]
