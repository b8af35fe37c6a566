"""
Invoice Store: lookups and the serialized write path used by reconciliation.

Writes go through ``compare_and_set``, an optimistic update guarded by the
``version`` column. Reads meant to precede such a write use
``get_for_update`` so PostgreSQL also holds a row lock for the duration of
the decision.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from invoicepay.modules.invoices.models import Invoice, InvoiceStatus, PaymentMethod, PAYABLE_STATUSES


class InvoiceStore:
    """Operaciones de base de datos para facturas"""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, invoice_id: UUID) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.id == invoice_id).first()

    def get_by_payment_token(self, payment_token: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.payment_token == payment_token).first()

    def get_by_gateway_invoice_id(self, gateway_invoice_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(
            Invoice.gateway_invoice_id == gateway_invoice_id
        ).order_by(Invoice.created_at.desc()).first()

    def get_by_transaction_id(self, transaction_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.transaction_id == transaction_id).first()

    def get_by_tracking_id(self, tracking_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.crypto_tracking_id == tracking_id).first()

    def resolve_order_reference(self, order_reference: str) -> Optional[Invoice]:
        """
        Resolve a card-rail ``orderid`` to an invoice.

        Order references are built as ``<gateway invoice id>-<suffix>...``. The
        exact value is tried first, then trailing ``-segments`` are stripped one
        at a time so the longest matching prefix wins.
        """
        candidate = order_reference.strip()
        while candidate:
            invoice = self.get_by_gateway_invoice_id(candidate)
            if invoice is not None:
                return invoice
            if "-" not in candidate:
                break
            candidate = candidate.rsplit("-", 1)[0]
        return None

    def get_for_update(self, invoice_id: UUID) -> Optional[Invoice]:
        """Fresh read of the row, locked where the database supports it."""
        return self.db.query(Invoice).filter(
            Invoice.id == invoice_id
        ).populate_existing().with_for_update().first()

    def compare_and_set(self, invoice_id: UUID, expected_version: int, values: Dict[str, Any]) -> bool:
        """
        Apply ``values`` only if the row still carries ``expected_version``.

        Returns False when another writer got there first. The caller owns the
        transaction (commit/rollback).
        """
        result = self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.version == expected_version)
            .values(**values, version=Invoice.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def attach_tracking_id(self, invoice_id: UUID, tracking_id: str, payment_url: Optional[str]) -> bool:
        """Store a crypto tracking id unless one is already on file. Commits."""
        result = self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.crypto_tracking_id.is_(None))
            .values(
                crypto_tracking_id=tracking_id,
                crypto_payment_url=payment_url,
                payment_method=PaymentMethod.CRYPTO,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def list_pending_crypto(self, limit: int = 100) -> List[Invoice]:
        """Payable invoices waiting on a crypto payment, least recently checked first."""
        return self.db.query(Invoice).filter(
            Invoice.crypto_tracking_id.isnot(None),
            Invoice.status.in_(PAYABLE_STATUSES),
        ).order_by(
            Invoice.crypto_last_checked_at.asc().nulls_first(),
            Invoice.created_at.asc(),
        ).limit(limit).all()

    def mark_crypto_checked(self, invoice_id: UUID) -> None:
        """Record a provider status check. Leaves ``version`` alone. Commits."""
        self.db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id)
            .values(crypto_last_checked_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    def list_for_merchant(self, merchant_id: UUID, status: Optional[InvoiceStatus] = None) -> List[Invoice]:
        query = self.db.query(Invoice).filter(Invoice.merchant_id == merchant_id)
        if status is not None:
            query = query.filter(Invoice.status == status)
        return query.order_by(Invoice.created_at.desc()).all()
