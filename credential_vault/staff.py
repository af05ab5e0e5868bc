"""
Staff Service — admin-only management of staff accounts.

An admin may change roles and remove accounts, but never remove their own
account.
"""
import logging
from typing import Any, Optional

from .audit import AuditRecorder
from .authorizer import can_manage_staff
from .context import RequestContext
from .exceptions import ForbiddenError, NotFoundError, ValidationError
from .models import Actor, AuditAction, AuditEntry, AuditResource, Role, StaffMember
from .service import storage_errors
from .storage import UserStore

logger = logging.getLogger("credential_vault.staff")


class StaffService:
    def __init__(self, users: UserStore, recorder: AuditRecorder):
        self._users = users
        self._recorder = recorder

    async def _audit(
        self,
        actor: Actor,
        action: AuditAction,
        *,
        resource_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> None:
        # Result discarded; see CredentialService._audit.
        await self._recorder.record(
            AuditEntry.for_actor(
                actor,
                action,
                AuditResource.USER,
                resource_id=resource_id,
                details=details,
                success=success,
                error_message=error_message,
                context=context,
            )
        )

    async def _require_admin(
        self,
        actor: Actor,
        action: AuditAction,
        staff_id: Optional[str],
        context: Optional[RequestContext],
    ) -> None:
        if can_manage_staff(actor):
            return
        await self._audit(
            actor,
            action,
            resource_id=staff_id,
            success=False,
            error_message="Admin role required",
            context=context,
        )
        raise ForbiddenError("Access denied. Admin role required.")

    async def _get(self, staff_id: str) -> StaffMember:
        with storage_errors("staff lookup"):
            member = await self._users.get(staff_id)
        if member is None:
            raise NotFoundError("Staff member not found")
        return member

    async def list_staff(
        self, actor: Actor, context: Optional[RequestContext] = None,
    ) -> list[StaffMember]:
        await self._require_admin(
            actor, AuditAction.SECURITY_VIOLATION, None, context,
        )
        with storage_errors("staff list"):
            return await self._users.list_all()

    async def update_role(
        self,
        actor: Actor,
        staff_id: str,
        role: Any,
        context: Optional[RequestContext] = None,
    ) -> StaffMember:
        """Change a staff member's role.

        Raises:
            ForbiddenError: If the actor is not an admin.
            ValidationError: If ``role`` is not ADMIN or USER.
            NotFoundError: If the staff member does not exist.
        """
        await self._require_admin(
            actor, AuditAction.UPDATE_USER_ROLE, staff_id, context,
        )
        try:
            new_role = Role(role)
        except ValueError:
            raise ValidationError("Invalid role. Must be ADMIN or USER") from None

        member = await self._get(staff_id)
        with storage_errors("role update"):
            updated = await self._users.update_role(staff_id, new_role)
        if updated is None:
            raise NotFoundError("Staff member not found")

        await self._audit(
            actor,
            AuditAction.UPDATE_USER_ROLE,
            resource_id=staff_id,
            details={
                "email": member.email,
                "previousRole": member.role.value,
                "newRole": new_role.value,
            },
            context=context,
        )
        logger.info(
            "Staff role changed: id=%s %s -> %s by %s",
            staff_id, member.role.value, new_role.value, actor.id,
        )
        return updated

    async def delete_staff(
        self,
        actor: Actor,
        staff_id: str,
        context: Optional[RequestContext] = None,
    ) -> None:
        """Remove a staff account.

        Raises:
            ForbiddenError: If the actor is not an admin, or targets their
                own account.
            NotFoundError: If the staff member does not exist.
        """
        await self._require_admin(
            actor, AuditAction.DELETE_USER, staff_id, context,
        )
        if staff_id == actor.id:
            await self._audit(
                actor,
                AuditAction.DELETE_USER,
                resource_id=staff_id,
                success=False,
                error_message="Cannot delete your own account",
                context=context,
            )
            raise ForbiddenError("Cannot delete your own account")

        member = await self._get(staff_id)
        await self._audit(
            actor,
            AuditAction.DELETE_USER,
            resource_id=staff_id,
            details={"email": member.email, "role": member.role.value},
            context=context,
        )
        with storage_errors("staff delete"):
            removed = await self._users.delete(staff_id)
        if not removed:
            raise NotFoundError("Staff member not found")
        logger.info("Staff member deleted: id=%s by %s", staff_id, actor.id)
