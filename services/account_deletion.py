"""Account-deletion eligibility.

Walks every organization the user belongs to and decides whether removing
the user would orphan an organization or its subscription.

Rules (roles rank owner > admin > member):

1. Admin or member: the membership is deleted along with the user.
2. Owner alongside another owner: same, the other owners keep the org.
3. Sole owner: blocked until the user acts on the organization. What they
   must do depends on whether an active subscription exists, whether it is
   already scheduled to cancel, and whether an admin could be promoted.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

import db.repositories.memberships as membership_repo
import db.repositories.organizations as org_repo
import db.repositories.subscriptions as subscription_repo
from db.models import Organization, OrganizationSubscription
from db.repositories.memberships import ADMIN_ROLE, OWNER_ROLE
from schemas.account import DeletionCheck, MemberOrgInfo, OwnedOrgInfo
from tools import workos_tools

logger = logging.getLogger(__name__)


class AccountDeletionBlocked(Exception):
    """The user still solely owns organizations that need attention."""

    def __init__(self, reason: str, check: Optional[DeletionCheck] = None):
        super().__init__(reason)
        self.reason = reason
        self.check = check


class AccountDeletionFailed(Exception):
    """The identity provider refused or failed to delete the user."""


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "the end of the billing period"
    return f"{value.month}/{value.day}/{value.year}"


def _sole_owner_action(
    org: Organization,
    subscription: Optional[OrganizationSubscription],
    has_other_admins: bool,
    member_count: int,
) -> tuple[str, str]:
    """Return (required_action, message) for an organization the user solely owns."""
    if subscription is not None:
        if subscription.cancel_at_period_end:
            if has_other_admins:
                return (
                    "transfer_ownership",
                    f"{org.name}: Promote an admin to owner before deleting your account",
                )
            return (
                "delete_organization",
                f"{org.name}: Delete the organization or wait for subscription to end "
                f"(cancels on {_format_date(subscription.current_period_end)})",
            )
        if has_other_admins:
            return (
                "transfer_ownership",
                f"{org.name}: Promote an admin to owner to keep the subscription, or cancel it first",
            )
        return (
            "cancel_subscription",
            f"{org.name}: Cancel subscription first, then delete the organization (you're the only owner)",
        )

    if has_other_admins:
        return (
            "transfer_ownership",
            f"{org.name}: Promote an admin to owner, or delete the organization",
        )
    if member_count > 1:
        return (
            "delete_organization",
            f"{org.name}: Delete the organization (you're the only owner)",
        )
    return "delete_organization", f"{org.name}: Delete the organization first"


def _reason(lines: list[str]) -> Optional[str]:
    if not lines:
        return None
    if len(lines) == 1:
        return lines[0]
    numbered = "\n".join(f"{i}. {line}" for i, line in enumerate(lines, start=1))
    return f"You must resolve the following before deleting your account:\n{numbered}"


async def can_delete_account_check(session: AsyncSession, user_external_id: str) -> DeletionCheck:
    """Decide whether the user can be deleted and what blocks it if not."""
    memberships = await membership_repo.list_for_user(session, user_external_id)
    orgs = await org_repo.get_many_by_external_id(
        session, [m.organization_external_id for m in memberships]
    )

    owned: list[OwnedOrgInfo] = []
    member_of: list[MemberOrgInfo] = []
    requiring_action: list[str] = []

    for membership in memberships:
        org = orgs.get(membership.organization_external_id)
        if org is None:
            continue

        member_info = MemberOrgInfo(
            organization_id=str(org.id),
            external_id=org.external_id,
            name=org.name,
            role=membership.role,
            will_be_auto_deleted=True,
        )
        if membership.role != OWNER_ROLE:
            member_of.append(member_info)
            continue

        org_members = await membership_repo.list_for_organization(session, org.external_id)
        others = [m for m in org_members if m.user_external_id != user_external_id]
        if any(m.role == OWNER_ROLE for m in others):
            member_of.append(member_info)
            continue

        has_other_admins = any(m.role == ADMIN_ROLE for m in others)
        subscription = await subscription_repo.get_for_organization(session, org.id)
        if subscription is not None and subscription.status != subscription_repo.ACTIVE_STATUS:
            subscription = None

        action, message = _sole_owner_action(org, subscription, has_other_admins, len(org_members))
        requiring_action.append(message)
        owned.append(
            OwnedOrgInfo(
                organization_id=str(org.id),
                external_id=org.external_id,
                name=org.name,
                has_active_subscription=subscription is not None,
                subscription_status=subscription.status if subscription is not None else None,
                cancel_at_period_end=bool(subscription and subscription.cancel_at_period_end),
                current_period_end=subscription.current_period_end if subscription is not None else None,
                member_count=len(org_members),
                has_other_admins=has_other_admins,
                required_action=action,
            )
        )

    has_blocking_issues = len(requiring_action) > 0
    return DeletionCheck(
        can_delete=not has_blocking_issues,
        reason=_reason(requiring_action),
        owned_organizations=owned,
        member_organizations=member_of,
        total_organizations=len(memberships),
        owned_count=len(owned),
        member_count=len(member_of),
        organizations_requiring_action=requiring_action,
        has_blocking_issues=has_blocking_issues,
    )


async def delete_account(session: AsyncSession, user_external_id: str) -> dict:
    """Delete a user at the identity provider once nothing blocks it.

    Local and secondary-store cleanup follows from the resulting user.deleted
    event.
    """
    check = await can_delete_account_check(session, user_external_id)
    if not check.can_delete:
        raise AccountDeletionBlocked(check.reason or "Account cannot be deleted", check)

    revoked = await asyncio.to_thread(workos_tools.revoke_user_sessions, user_external_id)
    if "error" in revoked:
        logger.warning(
            "Some sessions of %s could not be revoked: %s", user_external_id, revoked["error"]
        )

    deleted = await asyncio.to_thread(workos_tools.delete_user, user_external_id)
    if not deleted.get("deleted"):
        raise AccountDeletionFailed(deleted.get("error", "Unknown error"))

    logger.info("Deleted user %s at the identity provider", user_external_id)
    return {"success": True, "message": "Account deleted successfully"}
