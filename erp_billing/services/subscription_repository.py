from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from erp_billing.extensions import db
from erp_billing.billing.catalog import PlanCatalog
from erp_billing.billing.errors import NotFoundError, PersistenceError
from erp_billing.models import BILLING_PERIODS, Subscription

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


def ts_to_dt(ts) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def period_bounds(sub_obj) -> tuple[Optional[datetime], Optional[datetime]]:
    """Newer API versions carry the period on the subscription item instead of the subscription."""
    start = sub_obj.get("current_period_start")
    end = sub_obj.get("current_period_end")
    if start is None or end is None:
        items = (sub_obj.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return ts_to_dt(start), ts_to_dt(end)


class SubscriptionRepository:
    """
    One authoritative subscription row per organization.

    The row is locked for the read-modify-write and carries a version
    column, so a concurrent writer fails loudly instead of being silently
    overwritten.
    """

    def __init__(self, catalog: PlanCatalog | None = None, session=None):
        self.session = session or db.session
        self.catalog = catalog or PlanCatalog(self.session)

    def current(self, organization_id: int) -> Optional[Subscription]:
        return (
            self.session.query(Subscription)
            .filter_by(organization_id=organization_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .first()
        )

    def by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        return self.session.query(Subscription).filter_by(stripe_subscription_id=stripe_subscription_id).one_or_none()

    def _locked_current(self, organization_id: int) -> Optional[Subscription]:
        # FOR UPDATE serializes writers per organization on Postgres; SQLite ignores it.
        # "of" keeps the lock off the outer-joined plan row
        return (
            self.session.query(Subscription)
            .filter_by(organization_id=organization_id)
            .order_by(Subscription.created_at.desc(), Subscription.id.desc())
            .with_for_update(of=Subscription)
            .first()
        )

    def upsert(
        self,
        organization_id: int,
        *,
        plan_code: str,
        stripe_subscription_id: str,
        stripe_customer_id: str,
        status: str,
        billing_period: Optional[str] = None,
        trial_end: Optional[datetime] = None,
        current_period_start: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        plan_id = self.catalog.plan_id(plan_code)
        fields = {
            "plan_id": plan_id,
            "stripe_subscription_id": stripe_subscription_id,
            "stripe_customer_id": stripe_customer_id,
            "status": status,
            "billing_period": billing_period,
            "trial_end": trial_end,
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
            "meta": dict(metadata or {}),
            "cancel_at_period_end": False,
            "cancel_at": None,
            "canceled_at": None,
            "updated_at": _utcnow(),
        }

        for attempt in (1, 2):
            try:
                row = self._locked_current(organization_id)
                if row is None:
                    row = Subscription(organization_id=organization_id, **fields)
                    self.session.add(row)
                else:
                    for key, value in fields.items():
                        setattr(row, key, value)
                self.session.commit()
                break
            except IntegrityError as exc:
                self.session.rollback()
                # A concurrent insert for the same organization won; update its row instead
                if attempt == 1:
                    logger.info("billing.subscription.upsert_retry", extra={"organization_id": organization_id})
                    continue
                raise PersistenceError(f"Could not save subscription for organization {organization_id}") from exc
            except StaleDataError as exc:
                self.session.rollback()
                raise PersistenceError(
                    f"Subscription for organization {organization_id} was modified concurrently"
                ) from exc
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.exception("billing.subscription.upsert_failed", extra={"organization_id": organization_id})
                raise PersistenceError(f"Could not save subscription for organization {organization_id}") from exc

        logger.info(
            "billing.subscription.saved",
            extra={
                "organization_id": organization_id,
                "stripe_subscription_id": stripe_subscription_id,
                "status": status,
                "plan_code": plan_code,
            },
        )
        return row

    def _plan_id_or_current(self, plan_code: str, row: Subscription) -> Optional[int]:
        try:
            return self.catalog.plan_id(plan_code)
        except NotFoundError:
            logger.warning(
                "billing.subscription.unknown_plan",
                extra={"stripe_subscription_id": row.stripe_subscription_id, "plan_code": plan_code},
            )
            return row.plan_id

    def sync_from_processor(
        self,
        sub_obj,
        *,
        plan_code: Optional[str] = None,
        billing_period: Optional[str] = None,
    ) -> Subscription:
        """Mirror a processor subscription object onto its local row."""
        stripe_id = sub_obj.get("id")
        row = self.by_stripe_id(stripe_id)
        if row is None:
            raise NotFoundError(f"Subscription {stripe_id} is not tracked locally")

        start, end = period_bounds(sub_obj)
        try:
            if plan_code:
                row.plan_id = self._plan_id_or_current(plan_code, row)
            if billing_period in BILLING_PERIODS:
                row.billing_period = billing_period
            row.status = sub_obj.get("status") or row.status
            row.cancel_at_period_end = bool(sub_obj.get("cancel_at_period_end"))
            row.cancel_at = ts_to_dt(sub_obj.get("cancel_at"))
            row.canceled_at = ts_to_dt(sub_obj.get("canceled_at"))
            row.trial_end = ts_to_dt(sub_obj.get("trial_end")) or row.trial_end
            row.current_period_start = start or row.current_period_start
            row.current_period_end = end or row.current_period_end
            row.updated_at = _utcnow()
            self.session.commit()
        except StaleDataError as exc:
            self.session.rollback()
            raise PersistenceError(f"Subscription {stripe_id} was modified concurrently") from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception("billing.subscription.sync_failed", extra={"stripe_subscription_id": stripe_id})
            raise PersistenceError(f"Could not update subscription {stripe_id}") from exc

        logger.info(
            "billing.subscription.synced",
            extra={"stripe_subscription_id": stripe_id, "status": row.status},
        )
        return row
