"""
Typed records for index payloads.

Index entities arrive with camelCase keys and BigInt values encoded as
strings; the models accept both the wire aliases and the field names and
coerce numeric strings.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class IndexRecord(BaseModel):
    """Base model for index entities."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EntityRef(IndexRecord):
    """Reference to another index entity."""
    id: str


class OperatorSetRef(IndexRecord):
    """Reference to an operator set."""
    id: str
    avs: Optional[EntityRef] = None
    created_at: Optional[int] = Field(None, alias="createdAt")


class ShareEventType(str, Enum):
    """Operator share event types."""
    INCREASED = "INCREASED"
    DECREASED = "DECREASED"


class CommissionType(str, Enum):
    """Commission scopes."""
    AVS_SPECIFIC = "AVS_SPECIFIC"
    PI_SPECIFIC = "PI_SPECIFIC"
    OPERATOR_SET_SPECIFIC = "OPERATOR_SET_SPECIFIC"


class SlashingEvent(IndexRecord):
    """An operator slashing event."""
    id: str
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    block_timestamp: int = Field(..., alias="blockTimestamp")
    operator: EntityRef
    operator_set: Optional[OperatorSetRef] = Field(None, alias="operatorSet")
    strategies: List[str] = Field(default_factory=list)
    wad_slashed: List[str] = Field(default_factory=list, alias="wadSlashed")
    description: Optional[str] = None


class OperatorShareEvent(IndexRecord):
    """Delegated share increase or decrease."""
    id: str
    block_timestamp: int = Field(..., alias="blockTimestamp")
    operator: EntityRef
    staker: EntityRef
    strategy: Optional[EntityRef] = None
    shares: float
    event_type: ShareEventType = Field(..., alias="eventType")


class OperatorCommissionEvent(IndexRecord):
    """Commission change announced by an operator."""
    id: str
    operator: EntityRef
    commission_type: CommissionType = Field(..., alias="commissionType")
    old_commission_bips: int = Field(..., alias="oldCommissionBips")
    new_commission_bips: int = Field(..., alias="newCommissionBips")
    activated_at: int = Field(..., alias="activatedAt")
    block_timestamp: int = Field(..., alias="blockTimestamp")
    target_avs: Optional[EntityRef] = Field(None, alias="targetAVS")
    target_operator_set: Optional[EntityRef] = Field(None, alias="targetOperatorSet")


class OperatorSetMembership(IndexRecord):
    """Membership of an operator in an operator set."""
    id: str
    operator: EntityRef
    operator_set: OperatorSetRef = Field(..., alias="operatorSet")
    joined_at: int = Field(..., alias="joinedAt")
    left_at: Optional[int] = Field(None, alias="leftAt")
    is_active: bool = Field(..., alias="isActive")


class OperatorSummary(IndexRecord):
    """Operator entry from the operator listing."""
    id: str
    address: str
    registered_at: int = Field(..., alias="registeredAt")
    delegator_count: int = Field(0, alias="delegatorCount")
    slashing_event_count: int = Field(0, alias="slashingEventCount")
    last_activity_at: Optional[int] = Field(None, alias="lastActivityAt")


class OperatorRegistration(OperatorSummary):
    """Full registration record for a single operator."""
    avs_registration_count: int = Field(0, alias="avsRegistrationCount")
    operator_set_count: int = Field(0, alias="operatorSetCount")


class AVSAdoptionRecord(IndexRecord):
    """Operator membership seen from the AVS side."""
    operator: EntityRef
    joined_at: int = Field(..., alias="joinedAt")
    left_at: Optional[int] = Field(None, alias="leftAt")
    is_active: bool = Field(..., alias="isActive")


class AVSInfo(IndexRecord):
    """AVS summary counters."""
    id: str
    address: str
    operator_set_count: int = Field(0, alias="operatorSetCount")
    total_operator_registrations: int = Field(0, alias="totalOperatorRegistrations")
    rewards_submission_count: int = Field(0, alias="rewardsSubmissionCount")
    slashing_event_count: int = Field(0, alias="slashingEventCount")
    created_at: Optional[int] = Field(None, alias="createdAt")
    last_activity_at: Optional[int] = Field(None, alias="lastActivityAt")


class DelegationStabilityData(BaseModel):
    """Delegation totals derived from share events."""
    total_delegated: float
    delegator_count: int
    volatility_coefficient: float
    growth_rate: float
    monthly_changes: List[float] = Field(default_factory=list)


# Response envelopes, one per query shape.

class SlashingEventsResponse(IndexRecord):
    operator_slasheds: Optional[List[SlashingEvent]] = Field(None, alias="operatorSlasheds")


class ShareEventsResponse(IndexRecord):
    operator_share_events: Optional[List[OperatorShareEvent]] = Field(None, alias="operatorShareEvents")


class CommissionEventsResponse(IndexRecord):
    operator_commission_events: Optional[List[OperatorCommissionEvent]] = Field(None, alias="operatorCommissionEvents")


class SetMembershipsResponse(IndexRecord):
    operator_set_memberships: Optional[List[OperatorSetMembership]] = Field(None, alias="operatorSetMemberships")


class AdoptionResponse(IndexRecord):
    operator_set_memberships: Optional[List[AVSAdoptionRecord]] = Field(None, alias="operatorSetMemberships")


class OperatorRegistrationResponse(IndexRecord):
    operator: Optional[OperatorRegistration] = None


class OperatorListResponse(IndexRecord):
    operators: Optional[List[OperatorSummary]] = None


class AVSInfoResponse(IndexRecord):
    avs: Optional[AVSInfo] = None
