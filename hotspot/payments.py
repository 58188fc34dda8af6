"""
Payment gateway capability consumed by the voucher service
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .models import Payment

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    success: bool
    status: str = ""
    transaction_id: str = ""
    reference: str = ""
    requires_confirmation: bool = False
    message: str = ""


class PaymentGateway(ABC):
    """Gateway integrations (mobile money, card) implement this interface."""

    name = "gateway"

    @abstractmethod
    def initialize_payment(self, amount, currency, customer_phone, description, metadata=None) -> PaymentResult:
        ...

    @abstractmethod
    def verify_payment(self, reference) -> PaymentResult:
        ...

    @abstractmethod
    def refund_payment(self, reference, amount, reason="") -> PaymentResult:
        ...


class ManualPaymentGateway(PaymentGateway):
    """
    Cash / operator-confirmed payments.

    Verification trusts the stored payment row, and refunds are filed for
    manual processing rather than reversed automatically.
    """

    name = "manual"

    def initialize_payment(self, amount, currency, customer_phone, description, metadata=None):
        transaction_id = f"MAN-{uuid.uuid4().hex[:12].upper()}"
        logger.info(
            f"Manual payment {transaction_id} initialized: {currency} {amount} for {customer_phone}"
        )
        return PaymentResult(
            success=True,
            status="pending",
            transaction_id=transaction_id,
            reference=transaction_id,
            requires_confirmation=True,
            message="Awaiting operator confirmation",
        )

    def verify_payment(self, reference):
        payment = (
            Payment.objects.filter(transaction_id=reference).first()
            or Payment.objects.filter(reference=reference).first()
        )
        if payment is None:
            return PaymentResult(success=False, status="not_found", reference=reference)
        return PaymentResult(
            success=payment.status == "completed",
            status=payment.status,
            transaction_id=payment.transaction_id,
            reference=payment.reference,
        )

    def refund_payment(self, reference, amount, reason=""):
        logger.warning(
            f"Refund of {amount} for payment {reference} requires manual processing: {reason}"
        )
        return PaymentResult(
            success=False,
            status="manual_review",
            reference=reference,
            message="Refund filed for manual processing",
        )
