"""
Access Authorizer — role and ownership decisions.

Pure functions with no I/O. Role is the only authorization axis: ADMIN
bypasses ownership checks, USER may only act on records it created.
Rules that depend on more than (actor, owner), such as refusing to delete
one's own staff account, are composed by the calling service.
"""
from .models import Actor, Role


def is_owner_or_admin(actor: Actor, owner_id: str) -> bool:
    return actor.role is Role.ADMIN or actor.id == owner_id


def can_read(actor: Actor, owner_id: str) -> bool:
    """Check if actor may view a record owned by ``owner_id``."""
    return is_owner_or_admin(actor, owner_id)


def can_decrypt(actor: Actor, owner_id: str) -> bool:
    """Same rule as ``can_read``; decrypt has no finer permission."""
    return is_owner_or_admin(actor, owner_id)


def can_mutate(actor: Actor, owner_id: str) -> bool:
    """Check if actor may update or delete a record."""
    return is_owner_or_admin(actor, owner_id)


def can_export(actor: Actor) -> bool:
    # The exported set is filtered to the actor's visible records by the caller.
    return actor.role in (Role.ADMIN, Role.USER)


def can_manage_staff(actor: Actor) -> bool:
    return actor.role is Role.ADMIN


def can_view_audit(actor: Actor) -> bool:
    return actor.role is Role.ADMIN
