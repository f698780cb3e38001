"""
Typed index accessors consumed by the risk scoring services.

Every accessor goes through ``CacheAsideGateway.query`` so that reads are
cached, coalesced, bounded and protected by the circuit breaker.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, TypeVar, TYPE_CHECKING

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.errors import MalformedIndexResponse
from shared.logging import get_logger
from ..stats import growth_rate, standard_deviation
from .models import (
    AVSAdoptionRecord,
    AVSInfo,
    AVSInfoResponse,
    AdoptionResponse,
    CommissionEventsResponse,
    DelegationStabilityData,
    OperatorCommissionEvent,
    OperatorListResponse,
    OperatorRegistration,
    OperatorRegistrationResponse,
    OperatorSetMembership,
    OperatorShareEvent,
    OperatorSummary,
    SetMembershipsResponse,
    ShareEventType,
    ShareEventsResponse,
    SlashingEvent,
    SlashingEventsResponse,
)

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..gateway import CacheAsideGateway


ResponseT = TypeVar("ResponseT", bound=BaseModel)

EVENTS_TTL = 300
ENTITY_TTL = 600
LISTING_TTL = 900


OPERATOR_SLASHING_QUERY = """
query GetOperatorSlashingEvents($operatorAddress: Bytes!, $fromTimestamp: BigInt!) {
  operatorSlasheds(
    where: { operator_: { address: $operatorAddress }, blockTimestamp_gte: $fromTimestamp }
    orderBy: blockTimestamp
    orderDirection: desc
  ) {
    id
    transactionHash
    blockTimestamp
    operator { id }
    operatorSet { id avs { id } }
    strategies
    wadSlashed
    description
  }
}
"""

OPERATOR_SHARE_EVENTS_QUERY = """
query GetOperatorShareEvents($operatorAddress: Bytes!, $fromTimestamp: BigInt!) {
  operatorShareEvents(
    where: { operator_: { address: $operatorAddress }, blockTimestamp_gte: $fromTimestamp }
    orderBy: blockTimestamp
    orderDirection: asc
    first: 1000
  ) {
    id
    blockTimestamp
    operator { id }
    staker { id }
    strategy { id }
    shares
    eventType
  }
}
"""

OPERATOR_COMMISSION_QUERY = """
query GetOperatorCommissionEvents($operatorAddress: Bytes!, $fromTimestamp: BigInt!) {
  operatorCommissionEvents(
    where: { operator_: { address: $operatorAddress }, blockTimestamp_gte: $fromTimestamp }
    orderBy: blockTimestamp
    orderDirection: desc
  ) {
    id
    operator { id }
    commissionType
    oldCommissionBips
    newCommissionBips
    activatedAt
    blockTimestamp
    targetAVS { id }
    targetOperatorSet { id }
  }
}
"""

OPERATOR_SET_MEMBERSHIPS_QUERY = """
query GetOperatorSetMemberships($operatorAddress: Bytes!) {
  operatorSetMemberships(
    where: { operator_: { address: $operatorAddress } }
    orderBy: joinedAt
    orderDirection: asc
  ) {
    id
    operator { id }
    operatorSet { id avs { id } createdAt }
    joinedAt
    leftAt
    isActive
  }
}
"""

OPERATOR_REGISTRATION_QUERY = """
query GetOperatorRegistration($operatorAddress: Bytes!) {
  operator(id: $operatorAddress) {
    id
    address
    registeredAt
    delegatorCount
    avsRegistrationCount
    operatorSetCount
    slashingEventCount
    lastActivityAt
  }
}
"""

ALL_OPERATORS_QUERY = """
query GetAllOperators($limit: Int!) {
  operators(first: $limit, orderBy: registeredAt, orderDirection: desc) {
    id
    address
    registeredAt
    delegatorCount
    slashingEventCount
    lastActivityAt
  }
}
"""

AVS_SLASHING_QUERY = """
query GetAVSSlashingEvents($avsAddress: Bytes!, $fromTimestamp: BigInt!) {
  operatorSlasheds(
    where: { operatorSet_: { avs_: { address: $avsAddress } }, blockTimestamp_gte: $fromTimestamp }
    orderBy: blockTimestamp
    orderDirection: desc
  ) {
    id
    blockTimestamp
    operator { id }
    operatorSet { id }
    strategies
    wadSlashed
    description
  }
}
"""

AVS_ADOPTION_QUERY = """
query GetAVSOperatorAdoption($avsAddress: Bytes!) {
  operatorSetMemberships(
    where: { operatorSet_: { avs_: { address: $avsAddress } } }
    orderBy: joinedAt
    orderDirection: asc
  ) {
    operator { id }
    joinedAt
    leftAt
    isActive
  }
}
"""

AVS_INFO_QUERY = """
query GetAVSInfo($avsAddress: Bytes!) {
  avs(id: $avsAddress) {
    id
    address
    operatorSetCount
    totalOperatorRegistrations
    rewardsSubmissionCount
    slashingEventCount
    createdAt
    lastActivityAt
  }
}
"""


class IndexDataService:
    """Reads operator and AVS activity from the index through the gateway."""

    def __init__(self, gateway: "CacheAsideGateway"):
        self.gateway = gateway
        self.logger = get_logger("risk.index_data")

    async def _query(
        self,
        cache_key: str,
        query_text: str,
        variables: Dict[str, Any],
        response_model: Type[ResponseT],
        *,
        ttl: int,
        priority: int,
    ) -> ResponseT:
        async def query_fn() -> Dict[str, Any]:
            record = await self.gateway.fetch(query_text, variables, response_model=response_model)
            return record.model_dump(mode="json", by_alias=True)

        payload = await self.gateway.query(cache_key, query_fn, ttl=ttl, priority=priority)
        try:
            return response_model.model_validate(payload)
        except PydanticValidationError as e:
            self.logger.error("Cached index payload failed validation", cache_key=cache_key, errors=e.error_count())
            raise MalformedIndexResponse(
                f"Cached payload does not match {response_model.__name__}",
                details={"cache_key": cache_key},
            )

    def _lower_bound(self, from_timestamp: Optional[int]) -> int:
        return self.gateway.historical_timestamp if from_timestamp is None else from_timestamp

    async def get_operator_slashing_events(
        self,
        operator_address: str,
        from_timestamp: Optional[int] = None,
        *,
        priority: int = 0,
    ) -> List[SlashingEvent]:
        address = operator_address.lower()
        since = self._lower_bound(from_timestamp)
        response = await self._query(
            f"operator:{address}:slashing:{since}",
            OPERATOR_SLASHING_QUERY,
            {"operatorAddress": address, "fromTimestamp": str(since)},
            SlashingEventsResponse,
            ttl=EVENTS_TTL,
            priority=priority,
        )
        return response.operator_slasheds or []

    async def get_operator_delegation_history(
        self,
        operator_address: str,
        from_timestamp: Optional[int] = None,
        *,
        priority: int = 0,
    ) -> List[OperatorShareEvent]:
        """Share events since ``from_timestamp`` (the historical window by default)."""
        address = operator_address.lower()
        since = self._lower_bound(from_timestamp)
        response = await self._query(
            f"operator:{address}:delegation:{since}",
            OPERATOR_SHARE_EVENTS_QUERY,
            {"operatorAddress": address, "fromTimestamp": str(since)},
            ShareEventsResponse,
            ttl=EVENTS_TTL,
            priority=priority,
        )
        return response.operator_share_events or []

    async def get_operator_commission_events(
        self,
        operator_address: str,
        from_timestamp: Optional[int] = None,
        *,
        priority: int = 0,
    ) -> List[OperatorCommissionEvent]:
        address = operator_address.lower()
        since = self._lower_bound(from_timestamp)
        response = await self._query(
            f"operator:{address}:commission:{since}",
            OPERATOR_COMMISSION_QUERY,
            {"operatorAddress": address, "fromTimestamp": str(since)},
            CommissionEventsResponse,
            ttl=EVENTS_TTL,
            priority=priority,
        )
        return response.operator_commission_events or []

    async def get_operator_set_memberships(
        self,
        operator_address: str,
        *,
        priority: int = 0,
    ) -> List[OperatorSetMembership]:
        address = operator_address.lower()
        response = await self._query(
            f"operator:{address}:memberships",
            OPERATOR_SET_MEMBERSHIPS_QUERY,
            {"operatorAddress": address},
            SetMembershipsResponse,
            ttl=ENTITY_TTL,
            priority=priority,
        )
        return response.operator_set_memberships or []

    async def get_operator_registration_info(
        self,
        operator_address: str,
        *,
        priority: int = 0,
    ) -> Optional[OperatorRegistration]:
        address = operator_address.lower()
        response = await self._query(
            f"operator:{address}:registration",
            OPERATOR_REGISTRATION_QUERY,
            {"operatorAddress": address},
            OperatorRegistrationResponse,
            ttl=ENTITY_TTL,
            priority=priority,
        )
        return response.operator

    async def get_all_operators(self, limit: int = 100, *, priority: int = 0) -> List[OperatorSummary]:
        response = await self._query(
            f"operators:{limit}",
            ALL_OPERATORS_QUERY,
            {"limit": limit},
            OperatorListResponse,
            ttl=LISTING_TTL,
            priority=priority,
        )
        return response.operators or []

    async def get_avs_slashing_events(
        self,
        avs_address: str,
        from_timestamp: Optional[int] = None,
        *,
        priority: int = 0,
    ) -> List[SlashingEvent]:
        address = avs_address.lower()
        since = self._lower_bound(from_timestamp)
        response = await self._query(
            f"avs:{address}:slashing:{since}",
            AVS_SLASHING_QUERY,
            {"avsAddress": address, "fromTimestamp": str(since)},
            SlashingEventsResponse,
            ttl=EVENTS_TTL,
            priority=priority,
        )
        return response.operator_slasheds or []

    async def get_avs_operator_adoption(self, avs_address: str, *, priority: int = 0) -> List[AVSAdoptionRecord]:
        address = avs_address.lower()
        response = await self._query(
            f"avs:{address}:adoption",
            AVS_ADOPTION_QUERY,
            {"avsAddress": address},
            AdoptionResponse,
            ttl=ENTITY_TTL,
            priority=priority,
        )
        return response.operator_set_memberships or []

    async def get_avs_info(self, avs_address: str, *, priority: int = 0) -> Optional[AVSInfo]:
        address = avs_address.lower()
        response = await self._query(
            f"avs:{address}:info",
            AVS_INFO_QUERY,
            {"avsAddress": address},
            AVSInfoResponse,
            ttl=ENTITY_TTL,
            priority=priority,
        )
        return response.avs

    async def calculate_delegation_totals(self, operator_address: str, *, priority: int = 0) -> DelegationStabilityData:
        """Monthly net delegation totals over the operator's full share history."""
        events = await self.get_operator_delegation_history(operator_address, from_timestamp=0, priority=priority)
        return summarize_delegations(events)


def summarize_delegations(events: List[OperatorShareEvent]) -> DelegationStabilityData:
    """Fold share events (ascending by time) into monthly running totals."""
    monthly_totals: Dict[str, float] = {}
    current_total = 0.0
    delegators = set()

    for event in events:
        month = datetime.fromtimestamp(event.block_timestamp, tz=timezone.utc).strftime("%Y-%m")
        if event.event_type == ShareEventType.INCREASED:
            current_total += event.shares
            delegators.add(event.staker.id)
        else:
            current_total -= event.shares
        monthly_totals[month] = current_total

    monthly_values = list(monthly_totals.values())
    if not monthly_values:
        return DelegationStabilityData(
            total_delegated=0.0,
            delegator_count=0,
            volatility_coefficient=0.0,
            growth_rate=0.0,
            monthly_changes=[],
        )

    mean = sum(monthly_values) / len(monthly_values)
    volatility = standard_deviation(monthly_values) / mean if mean > 0 else 0.0
    growth = (
        growth_rate(monthly_values[0], monthly_values[-1], len(monthly_values))
        if len(monthly_values) > 1
        else 0.0
    )

    return DelegationStabilityData(
        total_delegated=current_total,
        delegator_count=len(delegators),
        volatility_coefficient=volatility,
        growth_rate=growth,
        monthly_changes=monthly_values,
    )
