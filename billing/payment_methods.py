"""Deleting a payment method is a soft delete: the row stays and its active flag
is cleared, so historical payments keep a valid reference.
"""

import logging
from typing import List, Optional

from billing.binders import payment_method_params, to_payment_method
from billing.dao import EntityDao
from billing.domain import CallContext, ChangeType, PaymentMethod, TenantContext
from billing.errors import ErrorCode, NotFound
from billing.models import PaymentMethodRecord

logger = logging.getLogger(__name__)


class PaymentMethodDao(EntityDao):

    def insert_payment_method(self, method: PaymentMethod, context: CallContext) -> PaymentMethod:
        now = self.clock()
        with self.transaction("payment method", duplicate_key=method.id) as session:
            row = PaymentMethodRecord(**payment_method_params(method, context, now))
            session.add(row)
            session.flush()
            self.audit(session, row, ChangeType.INSERT, context, now)
            return to_payment_method(row)

    def get_payment_method(self, payment_method_id: str, context: TenantContext) -> Optional[PaymentMethod]:
        return self._find(payment_method_id, context, include_deleted=False)

    def get_payment_method_including_deleted(self, payment_method_id: str,
                                             context: TenantContext) -> Optional[PaymentMethod]:
        return self._find(payment_method_id, context, include_deleted=True)

    def get_payment_methods(self, account_id: str, context: TenantContext) -> List[PaymentMethod]:
        with self.transaction("payment methods") as session:
            rows = session.scalars(
                self.scoped(PaymentMethodRecord, context)
                .where(PaymentMethodRecord.account_id == account_id, PaymentMethodRecord.is_active.is_(True))
                .order_by(PaymentMethodRecord.created_date, PaymentMethodRecord.record_id)
            ).all()
            return [to_payment_method(row) for row in rows]

    def delete_payment_method(self, payment_method_id: str, context: CallContext) -> None:
        now = self.clock()
        with self.transaction("payment method") as session:
            row = session.scalar(
                self.scoped(PaymentMethodRecord, context)
                .where(PaymentMethodRecord.id == payment_method_id, PaymentMethodRecord.is_active.is_(True))
            )
            if row is None:
                raise NotFound(ErrorCode.PAYMENT_NO_SUCH_PAYMENT_METHOD, payment_method_id)
            row.is_active = False
            self.touch(row, context, now)
            self.audit(session, row, ChangeType.DELETE, context, now)
        logger.info("Deactivated payment method %s", payment_method_id)

    def _find(self, payment_method_id: str, context: TenantContext, include_deleted: bool):
        query = self.scoped(PaymentMethodRecord, context).where(PaymentMethodRecord.id == payment_method_id)
        if not include_deleted:
            query = query.where(PaymentMethodRecord.is_active.is_(True))
        with self.transaction("payment method") as session:
            row = session.scalar(query)
            return to_payment_method(row) if row is not None else None
