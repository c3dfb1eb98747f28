"""Mid-cycle tier changes and their proration."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import structlog

from creator_billing.config import BillingSettings, TierPlan, get_settings, load_tier_catalog
from creator_billing.errors import NotFoundError, StateConflictError, UpstreamError, ValidationError
from creator_billing.identifiers import utc_now
from creator_billing.money import round_rupees, to_decimal, to_paise
from creator_billing.ports import BillingStore, Clock, NotificationSender
from creator_billing.state import StateMachine
from creator_billing.subscriptions.cycles import LIVE_STATUSES
from creator_billing.subscriptions.models import (
    BillingCycle,
    ProrationDetails,
    Subscriber,
    SubscriptionUpgrade,
    UpgradeStatus,
    UpgradeType,
)

logger = structlog.get_logger(__name__)

U = UpgradeStatus

UPGRADE_MACHINE: StateMachine[UpgradeStatus] = StateMachine(
    "SubscriptionUpgrade",
    {
        U.REQUESTED: {U.PAYMENT_PENDING, U.PROCESSING, U.CANCELLED, U.FAILED},
        U.PAYMENT_PENDING: {U.PROCESSING, U.CANCELLED, U.FAILED},
        U.PROCESSING: {U.COMPLETED, U.FAILED},
        U.COMPLETED: set(),
        U.FAILED: set(),
        U.CANCELLED: set(),
    },
)

IN_FLIGHT = (U.REQUESTED, U.PAYMENT_PENDING, U.PROCESSING)


def daily_rate(quarterly_price: Decimal, cycle_days: int = 90) -> Decimal:
    """Per-day price of a tier, computed in binary floating point.

    The stored tier prices were always divided as floats, so the same
    rounding is kept here to produce identical refund and charge amounts.
    """
    return Decimal(str(float(quarterly_price) / cycle_days))


def calculate_proration(
    from_price: Decimal,
    to_price: Decimal,
    cycle_end: datetime,
    now: datetime,
    cycle_days: int = 90,
) -> ProrationDetails:
    """Refund the unused part of the old tier and charge the new one for the same days.

    Remaining days are rounded up; refund and charge are each rounded
    half-up to whole rupees.
    """
    remaining_days = max(math.ceil((cycle_end - now).total_seconds() / 86400), 0)
    from_daily = daily_rate(to_decimal(from_price), cycle_days)
    to_daily = daily_rate(to_decimal(to_price), cycle_days)
    refund = round_rupees(from_daily * remaining_days)
    charge = round_rupees(to_daily * remaining_days)
    return ProrationDetails(
        remaining_days=remaining_days,
        from_daily_rate=to_paise(from_daily),
        to_daily_rate=to_paise(to_daily),
        refund_amount=refund,
        charge_amount=charge,
        net_amount=charge - refund,
    )


def classify_change(from_plan: TierPlan, to_plan: TierPlan) -> UpgradeType:
    if to_plan.rank > from_plan.rank:
        return UpgradeType.UPGRADE
    if to_plan.rank < from_plan.rank:
        return UpgradeType.DOWNGRADE
    return UpgradeType.PLAN_CHANGE


class UpgradeEngine:
    """Request, pay for, apply and abandon tier changes."""

    def __init__(
        self,
        store: BillingStore,
        notifier: NotificationSender | None = None,
        catalog: dict[str, TierPlan] | None = None,
        settings: BillingSettings | None = None,
        clock: Clock = utc_now,
    ):
        self._store = store
        self._notifier = notifier
        self._catalog = catalog if catalog is not None else load_tier_catalog()
        self._settings = settings or get_settings()
        self._clock = clock
        self._logger = logger.bind(component="upgrade_engine")

    def request_tier_change(
        self,
        subscriber_id: str,
        to_tier: str,
        *,
        reason: str | None = None,
    ) -> SubscriptionUpgrade:
        """Price a tier change against the subscriber's live cycle.

        Changes that cost nothing extra are applied straight away. Others
        wait in ``payment_pending`` for :meth:`confirm_upgrade_payment`.

        Raises:
            ValidationError: Unknown tier, or the subscriber is already on it.
            NotFoundError: Unknown subscriber or no live billing cycle.
            StateConflictError: Another tier change is still in flight.
        """
        with self._store.lock(f"subscriber:{subscriber_id}"):
            subscriber = self._load_subscriber(subscriber_id)
            if to_tier == subscriber.tier:
                raise ValidationError(
                    f"Subscriber is already on the {to_tier} tier",
                    field="to_tier",
                    rule="different_tier",
                )
            to_plan = self._plan(to_tier)
            from_plan = self._plan(subscriber.tier)
            cycle = self._live_cycle(subscriber_id)

            pending = [
                u for u in self._store.upgrades_for_subscriber(subscriber_id)
                if u.status in IN_FLIGHT
            ]
            if pending:
                raise StateConflictError(
                    "Another tier change is still in progress",
                    field="status",
                    entity=f"SubscriptionUpgrade:{pending[0].upgrade_id}",
                    rule="single_pending_upgrade",
                )

            now = self._clock()
            proration = calculate_proration(
                from_plan.quarterly_price,
                to_plan.quarterly_price,
                cycle.end_date,
                now,
                cycle_days=self._settings.proration_cycle_days,
            )
            upgrade = SubscriptionUpgrade(
                upgrade_id=str(uuid4()),
                subscriber_id=subscriber_id,
                cycle_id=cycle.cycle_id,
                from_tier=from_plan.key,
                to_tier=to_plan.key,
                upgrade_type=classify_change(from_plan, to_plan),
                proration=proration,
                requested_at=now,
                effective_date=now,
                rollback_deadline=now + timedelta(days=self._settings.upgrade_rollback_days),
                reason=reason,
            )

            self._logger.info(
                "tier_change_requested",
                upgrade_id=upgrade.upgrade_id,
                subscriber_id=subscriber_id,
                from_tier=upgrade.from_tier,
                to_tier=upgrade.to_tier,
                remaining_days=proration.remaining_days,
                net_amount=str(proration.net_amount),
            )

            if proration.payment_required:
                upgrade.status = UPGRADE_MACHINE.transition(
                    upgrade.status, U.PAYMENT_PENDING, entity_id=upgrade.upgrade_id
                )
                self._store.save_upgrade(upgrade)
                return upgrade

            # the request only exists if it applied
            with self._store.unit_of_work():
                self._store.save_upgrade(upgrade)
                upgrade, subscriber, plan = self._apply(upgrade.upgrade_id)

        self._applied(upgrade, subscriber, plan)
        return upgrade

    def confirm_upgrade_payment(self, upgrade_id: str, *, payment_reference: str) -> SubscriptionUpgrade:
        """Record the proration payment and apply the change."""
        upgrade = self._load_upgrade(upgrade_id)
        with self._store.lock(f"subscriber:{upgrade.subscriber_id}"):
            upgrade = self._load_upgrade(upgrade_id)
            if upgrade.status != U.PAYMENT_PENDING:
                raise StateConflictError(
                    f"Tier change {upgrade_id} is not awaiting payment",
                    field="status",
                    entity=f"SubscriptionUpgrade:{upgrade_id}",
                    rule="awaiting_payment",
                    details={"status": upgrade.status.value},
                )
            upgrade.status = UPGRADE_MACHINE.transition(upgrade.status, U.PROCESSING, entity_id=upgrade_id)
            upgrade.payment_reference = payment_reference
            self._store.save_upgrade(upgrade)
            return self.apply_upgrade(upgrade_id)

    def apply_upgrade(self, upgrade_id: str) -> SubscriptionUpgrade:
        """Switch the subscriber and the live cycle to the new tier.

        Raises:
            StateConflictError: Already completed, still waiting for payment,
                or the cycle it was priced against is no longer live.
        """
        upgrade = self._load_upgrade(upgrade_id)
        with self._store.lock(f"subscriber:{upgrade.subscriber_id}"):
            upgrade, subscriber, plan = self._apply(upgrade_id)
        self._applied(upgrade, subscriber, plan)
        return upgrade

    def cancel_upgrade(self, upgrade_id: str, *, reason: str | None = None) -> SubscriptionUpgrade:
        return self._finish(upgrade_id, U.CANCELLED, reason)

    def fail_upgrade(self, upgrade_id: str, *, reason: str) -> SubscriptionUpgrade:
        return self._finish(upgrade_id, U.FAILED, reason)

    def list_upgrades(self, subscriber_id: str) -> list[SubscriptionUpgrade]:
        return self._store.upgrades_for_subscriber(subscriber_id)

    # === Internals ===

    def _apply(self, upgrade_id: str) -> tuple[SubscriptionUpgrade, Subscriber, TierPlan]:
        upgrade = self._load_upgrade(upgrade_id)
        if upgrade.status == U.COMPLETED:
            raise StateConflictError(
                f"Tier change {upgrade_id} has already been applied",
                field="status",
                entity=f"SubscriptionUpgrade:{upgrade_id}",
                rule="apply_once",
            )
        if upgrade.status == U.PAYMENT_PENDING:
            raise StateConflictError(
                f"Tier change {upgrade_id} needs payment before it can be applied",
                field="status",
                entity=f"SubscriptionUpgrade:{upgrade_id}",
                rule="payment_required",
                details={"net_amount": str(upgrade.proration.net_amount)},
            )
        if upgrade.status != U.PROCESSING:
            upgrade.status = UPGRADE_MACHINE.transition(upgrade.status, U.PROCESSING, entity_id=upgrade_id)

        cycle = self._store.get_cycle(upgrade.cycle_id)
        if cycle is None or cycle.status not in LIVE_STATUSES:
            raise StateConflictError(
                "The billing cycle this change was priced against is no longer active",
                field="cycle_id",
                entity=f"BillingCycle:{upgrade.cycle_id}",
                rule="active_cycle",
            )

        plan = self._plan(upgrade.to_tier)
        subscriber = self._load_subscriber(upgrade.subscriber_id)
        subscriber.tier = plan.key
        cycle.tier = plan.key
        cycle.feature_limits = plan.limits

        now = self._clock()
        upgrade.status = UPGRADE_MACHINE.transition(upgrade.status, U.COMPLETED, entity_id=upgrade_id)
        upgrade.completed_at = now
        upgrade.effective_date = now

        with self._store.unit_of_work():
            self._store.save_subscriber(subscriber)
            self._store.save_cycle(cycle)
            self._store.save_upgrade(upgrade)
        return upgrade, subscriber, plan

    def _applied(self, upgrade: SubscriptionUpgrade, subscriber: Subscriber, plan: TierPlan) -> None:
        self._logger.info(
            "tier_change_applied",
            upgrade_id=upgrade.upgrade_id,
            subscriber_id=subscriber.subscriber_id,
            to_tier=plan.key,
            upgrade_type=upgrade.upgrade_type.value,
        )
        self._notify_completed(subscriber, upgrade, plan)

    def _finish(self, upgrade_id: str, target: UpgradeStatus, reason: str | None) -> SubscriptionUpgrade:
        upgrade = self._load_upgrade(upgrade_id)
        with self._store.lock(f"subscriber:{upgrade.subscriber_id}"):
            upgrade = self._load_upgrade(upgrade_id)
            upgrade.status = UPGRADE_MACHINE.transition(upgrade.status, target, entity_id=upgrade_id)
            upgrade.failure_reason = reason
            self._store.save_upgrade(upgrade)
        self._logger.info(
            "tier_change_closed",
            upgrade_id=upgrade_id,
            status=target.value,
            reason=reason,
        )
        return upgrade

    def _plan(self, tier: str) -> TierPlan:
        plan = self._catalog.get(tier)
        if plan is None:
            raise ValidationError(
                f"Unknown subscription tier {tier!r}",
                field="to_tier",
                rule="known_tier",
                details={"known": sorted(self._catalog)},
            )
        return plan

    def _live_cycle(self, subscriber_id: str) -> BillingCycle:
        live = [c for c in self._store.cycles_for_subscriber(subscriber_id) if c.status in LIVE_STATUSES]
        if not live:
            raise NotFoundError(
                f"No active billing cycle for subscriber {subscriber_id}",
                entity=f"Subscriber:{subscriber_id}",
                rule="active_cycle",
            )
        return live[-1]

    def _load_subscriber(self, subscriber_id: str) -> Subscriber:
        subscriber = self._store.get_subscriber(subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found", entity=f"Subscriber:{subscriber_id}")
        return subscriber

    def _load_upgrade(self, upgrade_id: str) -> SubscriptionUpgrade:
        upgrade = self._store.get_upgrade(upgrade_id)
        if upgrade is None:
            raise NotFoundError(
                f"Tier change {upgrade_id} not found", entity=f"SubscriptionUpgrade:{upgrade_id}"
            )
        return upgrade

    def _notify_completed(self, subscriber: Subscriber, upgrade: SubscriptionUpgrade, plan: TierPlan) -> None:
        if self._notifier is None:
            return
        body = f"Your plan is now {plan.display_name}."
        if upgrade.proration.payment_required:
            body += f" We charged ₹{upgrade.proration.net_amount} for the rest of this billing cycle."
        try:
            self._notifier.send_email(subscriber.email, "Your plan has changed", body)
        except UpstreamError as e:
            self._logger.warning(
                "tier_change_notification_failed",
                upgrade_id=upgrade.upgrade_id,
                error=str(e),
            )
