"""Account-deletion eligibility schemas."""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field

from .sync import ApiModel

RequiredAction = Literal["transfer_ownership", "cancel_subscription", "delete_organization"]


class OwnedOrgInfo(ApiModel):
    """An organization the user is the sole owner of."""

    organization_id: str
    external_id: str
    name: str
    has_active_subscription: bool
    subscription_status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    member_count: int
    has_other_admins: bool
    required_action: RequiredAction


class MemberOrgInfo(ApiModel):
    organization_id: str
    external_id: str
    name: str
    role: Optional[str] = None
    will_be_auto_deleted: bool = True


class DeletionCheck(ApiModel):
    can_delete: bool
    reason: Optional[str] = None
    owned_organizations: List[OwnedOrgInfo] = Field(default_factory=list)
    member_organizations: List[MemberOrgInfo] = Field(default_factory=list)
    total_organizations: int = 0
    owned_count: int = 0
    member_count: int = 0
    organizations_requiring_action: List[str] = Field(default_factory=list)
    has_blocking_issues: bool = False
