from datetime import date

import pytest

from ezboss.exceptions import PaymentNotFoundError, ValidationError
from ezboss.schemas.estimates import PaymentMethod
from ezboss.schemas.updates import RecordPayment


class TestPaymentLedger:
    def test_balance_after_payments_and_deletion(self, service, scenario_a):
        service.add_payment(scenario_a.id, RecordPayment(amount=100))
        fifty = service.add_payment(scenario_a.id, RecordPayment(amount=50, method=PaymentMethod.check))

        assert service.payment_summary(scenario_a.id).balance == 93

        service.delete_payment(scenario_a.id, fifty.id)

        summary = service.payment_summary(scenario_a.id)
        assert summary.balance == 143
        assert summary.total_paid == 100

    def test_record_fields(self, service, scenario_a, actor, clock):
        payment = service.add_payment(
            scenario_a.id,
            RecordPayment(amount=25.5, date=date(2025, 1, 10), method=PaymentMethod.card, notes="deposit"),
            actor,
        )

        assert payment.id
        assert payment.created_at == clock.now()
        assert payment.created_by == "Pat Contractor"
        assert payment.date == date(2025, 1, 10)
        stored = service.get_estimate(scenario_a.id).payments
        assert [p.id for p in stored] == [payment.id]

    def test_date_defaults_to_today(self, service, scenario_a, clock):
        payment = service.add_payment(scenario_a.id, RecordPayment(amount=10))

        assert payment.date == clock.now().date()

    @pytest.mark.parametrize("amount", [0, -5, 0.004, -0.004, float("nan"), float("inf")])
    def test_non_positive_amount_rejected(self, service, scenario_a, amount):
        with pytest.raises(ValidationError):
            service.add_payment(scenario_a.id, RecordPayment(amount=amount))

        assert service.get_estimate(scenario_a.id).payments == []

    def test_amount_rounded_to_cents(self, service, scenario_a):
        payment = service.add_payment(scenario_a.id, RecordPayment(amount=0.006))

        assert payment.amount == 0.01
        assert service.payment_summary(scenario_a.id).total_paid == 0.01

    def test_overpayment_allowed(self, service, scenario_a):
        service.add_payment(scenario_a.id, RecordPayment(amount=300))

        assert service.payment_summary(scenario_a.id).balance == -57

    def test_deleting_unknown_payment(self, service, scenario_a):
        with pytest.raises(PaymentNotFoundError):
            service.delete_payment(scenario_a.id, "pay_missing")

    def test_deleting_restores_exact_amount(self, service, scenario_a):
        service.add_payment(scenario_a.id, RecordPayment(amount=12.34))
        second = service.add_payment(scenario_a.id, RecordPayment(amount=56.78))
        before = service.payment_summary(scenario_a.id).balance

        service.delete_payment(scenario_a.id, second.id)

        assert service.payment_summary(scenario_a.id).balance == round(before + 56.78, 2)

    def test_payments_are_not_revisions(self, service, scenario_a):
        service.add_payment(scenario_a.id, RecordPayment(amount=100))

        assert service.get_estimate(scenario_a.id).current_revision == 1

    def test_payments_allowed_on_invoices(self, service, accepted_estimate):
        service.convert_to_invoice(accepted_estimate.id)

        service.add_payment(accepted_estimate.id, RecordPayment(amount=243))

        assert service.payment_summary(accepted_estimate.id).balance == 0
