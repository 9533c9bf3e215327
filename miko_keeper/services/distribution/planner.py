"""
Distribution planner.

Turns an available reward amount into a proportional, exclusion-aware plan
over eligible holders and owns the rollover that carries undistributed
remainders between cycles.
"""

from decimal import Decimal
from typing import List, Optional, Tuple

import structlog

from miko_keeper.core.exceptions import PlanInvariantError, PriceUnavailableError
from miko_keeper.services.interfaces import HolderDataProvider, PriceOracle, HolderBalance
from miko_keeper.services.retry import call_with_retry
from miko_keeper.services.state_store import StateStore
from .exclusions import ExclusionManager
from .types import (
    DistributionPlan,
    DistributionResult,
    PlanRecipient,
    PriceSource,
    RolloverState,
)


logger = structlog.get_logger(__name__)


def allocate(total: int, balances: List[int]) -> Tuple[List[int], int]:
    """
    Floor-proportional split of ``total`` by ``balances``.

    Returns the shares and the remainder; ``sum(shares) + remainder == total``.
    """
    weight = sum(balances)
    if weight <= 0:
        return [0 for _ in balances], total
    shares = [total * balance // weight for balance in balances]
    return shares, total - sum(shares)


def validate_plan(plan: DistributionPlan) -> None:
    """
    Raises:
        PlanInvariantError: the plan does not conserve ``total_amount``
    """
    details = {
        "total_amount": plan.total_amount,
        "planned": plan.planned_amount,
        "rollover": plan.rollover_amount,
        "recipients": len(plan.recipients),
    }
    if plan.total_amount < 0 or plan.rollover_amount < 0:
        raise PlanInvariantError("negative total or rollover", details)

    negative = [r.address for r in plan.recipients if r.amount < 0]
    if negative:
        raise PlanInvariantError("negative recipient share", {**details, "addresses": negative})

    if plan.planned_amount + plan.rollover_amount != plan.total_amount:
        raise PlanInvariantError("recipient sum plus rollover differs from total", details)

    eligible_count = len(plan.recipients) + plan.zero_share_count
    if eligible_count and plan.rollover_amount >= eligible_count:
        raise PlanInvariantError("rounding remainder exceeds recipient count", details)

    if plan.no_eligible_holders and plan.recipients:
        raise PlanInvariantError("plan without eligible holders has recipients", details)


class DistributionPlanner:
    """Eligibility filter, proportional allocation and rollover bookkeeping."""

    def __init__(
        self,
        holder_provider: HolderDataProvider,
        price_oracle: Optional[PriceOracle],
        exclusions: ExclusionManager,
        store: StateStore,
        token_mint: str,
        token_decimals: int = 9,
        minimum_holder_value_usd: Decimal = Decimal("100"),
        fallback_pool_ratio: Decimal = Decimal("0.001"),
        call_timeout: float = 30,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.holder_provider = holder_provider
        self.price_oracle = price_oracle
        self.exclusions = exclusions
        self.store = store
        self.token_mint = token_mint
        self.token_decimals = token_decimals
        self.minimum_holder_value_usd = Decimal(minimum_holder_value_usd)
        self.fallback_pool_ratio = Decimal(fallback_pool_ratio)
        self.call_timeout = call_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.last_price_source: Optional[PriceSource] = None
        self.logger = logger.bind(service="distribution_planner")

    async def _call(self, func, *args, operation: str):
        return await call_with_retry(
            func,
            *args,
            attempts=self.max_retries,
            timeout=self.call_timeout,
            delay=self.retry_delay,
            operation=operation,
        )

    async def resolve_price(self) -> Tuple[Decimal, PriceSource]:
        """
        Token USD price, falling back to the oracle estimate.

        Raises:
            PriceUnavailableError: neither source produced a positive price
        """
        try:
            price = await self._call(self.holder_provider.get_price, self.token_mint, operation="get_price")
        except Exception as e:
            self.logger.warning("Primary price lookup failed", error=str(e))
            price = None

        if price is not None and Decimal(price) > 0:
            return Decimal(price), PriceSource.PRIMARY

        if self.price_oracle is not None:
            try:
                reference = await self._call(self.price_oracle.get_reference_price, operation="get_reference_price")
            except Exception as e:
                self.logger.warning("Reference price lookup failed", error=str(e))
                reference = None

            if reference is not None and Decimal(reference) > 0:
                estimate = Decimal(reference) * self.fallback_pool_ratio
                self.logger.warning(
                    "Using fallback price estimate",
                    reference_price=str(reference),
                    pool_ratio=str(self.fallback_pool_ratio),
                    price=str(estimate),
                )
                return estimate, PriceSource.FALLBACK

        raise PriceUnavailableError(self.token_mint)

    def _eligible(
        self,
        holders: List[HolderBalance],
        price: Decimal,
        excluded: set,
    ) -> List[Tuple[HolderBalance, Decimal]]:
        scale = Decimal(10) ** self.token_decimals
        seen = set()
        eligible = []
        skipped_excluded = skipped_below = skipped_malformed = 0

        for holder in holders:
            balance = holder.balance
            if not holder.address or not isinstance(balance, int) or isinstance(balance, bool) or balance < 0:
                skipped_malformed += 1
                self.logger.warning("Skipping malformed holder row", address=holder.address, balance=balance)
                continue
            if holder.address in seen:
                skipped_malformed += 1
                self.logger.warning("Skipping duplicate holder row", address=holder.address)
                continue
            seen.add(holder.address)

            if holder.address in excluded:
                skipped_excluded += 1
                continue

            value_usd = Decimal(balance) / scale * price
            if balance > 0 and value_usd >= self.minimum_holder_value_usd:
                eligible.append((holder, value_usd))
            else:
                skipped_below += 1

        self.logger.info(
            "Eligibility filter applied",
            holders=len(holders),
            eligible=len(eligible),
            excluded=skipped_excluded,
            below_threshold=skipped_below,
            malformed=skipped_malformed,
        )
        return eligible

    async def plan(self, available_amount: int, reward_asset_id: str) -> DistributionPlan:
        """
        Build a distribution plan for ``available_amount`` plus any rollover
        held in the same reward asset.

        When nobody is eligible the whole total is persisted as rollover here.

        Raises:
            PriceUnavailableError: no price from either source
            ExternalServiceError: holder snapshot unavailable after retries
            PlanInvariantError: the computed plan does not conserve value
        """
        if available_amount < 0:
            raise PlanInvariantError("negative available amount", {"available_amount": available_amount})

        rollover = await self.store.get_rollover(reward_asset_id)
        total = available_amount + rollover.amount

        stale = [
            state.reward_asset_id
            for state in await self.store.list_rollovers()
            if state.reward_asset_id != reward_asset_id and state.amount > 0
        ]
        if stale:
            self.logger.warning(
                "Rollover held in other reward assets, not merged",
                reward_asset=reward_asset_id,
                stale_assets=stale,
            )

        plan = DistributionPlan(
            total_amount=total,
            reward_asset_id=reward_asset_id,
            available_amount=available_amount,
            rollover_folded=rollover.amount,
            stale_rollover_assets=stale,
        )

        if total == 0:
            self.logger.info("Nothing to distribute", reward_asset=reward_asset_id)
            return plan

        excluded = await self.exclusions.refresh(self.token_mint)
        price, source = await self.resolve_price()
        plan.price_usd = price
        plan.price_source = source
        self.last_price_source = source

        holders = await self._call(self.holder_provider.get_holders, self.token_mint, operation="get_holders")
        eligible = self._eligible(holders, price, excluded)

        programs = await self.exclusions.program_owned([holder.address for holder, _ in eligible])
        if programs:
            eligible = [(holder, value) for holder, value in eligible if holder.address not in programs]
            self.logger.info("Program-owned holders excluded", count=len(programs))

        if not eligible:
            plan.no_eligible_holders = True
            plan.rollover_amount = total
            validate_plan(plan)
            await self.store.settle(reward_asset_id, rollover_amount=total, consumed_proceeds=available_amount)
            self.logger.info(
                "No eligible holders, total rolled over",
                total=total,
                reward_asset=reward_asset_id,
                price_source=source.value,
            )
            return plan

        shares, remainder = allocate(total, [holder.balance for holder, _ in eligible])
        for (holder, value_usd), share in zip(eligible, shares):
            if share > 0:
                plan.recipients.append(PlanRecipient(
                    address=holder.address,
                    amount=share,
                    source_balance=holder.balance,
                    value_usd=value_usd,
                ))
            else:
                plan.zero_share_count += 1
        plan.rollover_amount = remainder

        validate_plan(plan)

        self.logger.info(
            "Distribution planned",
            total=total,
            available=available_amount,
            rollover_folded=rollover.amount,
            recipients=len(plan.recipients),
            rollover=plan.rollover_amount,
            reward_asset=reward_asset_id,
            price_usd=str(price),
            price_source=source.value,
        )
        return plan

    async def settle(
        self,
        plan: DistributionPlan,
        result: DistributionResult,
        cycle_id: Optional[int] = None,
    ) -> RolloverState:
        """
        Persist the rollover after execution and consume the plan's proceeds.

        - No eligible holders: already persisted by ``plan``.
        - Something distributed: the planned remainder is carried; failed
          recipients are recorded for manual reconciliation.
        - Nothing distributed: the whole total is carried.

        Raises:
            PlanInvariantError: execution accounting does not match the plan
        """
        if plan.no_eligible_holders or plan.total_amount == 0:
            return await self.store.get_rollover(plan.reward_asset_id)

        if result.distributed + result.failed_amount != plan.planned_amount:
            raise PlanInvariantError(
                "executed amounts differ from plan",
                {
                    "planned": plan.planned_amount,
                    "distributed": result.distributed,
                    "failed": result.failed_amount,
                },
            )

        if result.distributed > 0:
            rollover_amount = plan.rollover_amount
            failed_recipients = result.failed_recipients
        else:
            rollover_amount = plan.total_amount
            failed_recipients = []

        return await self.store.settle(
            plan.reward_asset_id,
            rollover_amount=rollover_amount,
            consumed_proceeds=plan.available_amount,
            cycle_id=cycle_id,
            failed_recipients=failed_recipients,
        )
