import pytest

from ezboss.exceptions import ExternalDependencyError, ValidationError
from ezboss.schemas.estimates import ClientState, EstimateState
from ezboss.schemas.updates import EstimateCreate, SendEstimateRequest
from ezboss.services.sending import send_estimate


class TestSendEstimate:
    def test_prepare_dispatch_record(self, service, dispatcher, scenario_a, actor):
        estimate = send_estimate(service, dispatcher, scenario_a.id, SendEstimateRequest(cc_emails=["office@contractor.test"]), actor)

        assert estimate.estimate_state == EstimateState.estimate
        assert estimate.client_state == ClientState.sent
        assert estimate.contractor_email == "pat@contractor.test"
        sent = dispatcher.sent[0]
        assert sent["to"] == "jordan@example.com"
        assert sent["token"] == estimate.email_token
        assert sent["cc"] == ["office@contractor.test"]

    def test_explicit_recipient_wins(self, service, dispatcher, scenario_a, actor):
        send_estimate(service, dispatcher, scenario_a.id, SendEstimateRequest(recipient_email="other@example.com"), actor)

        assert dispatcher.sent[0]["to"] == "other@example.com"

    def test_missing_recipient_writes_nothing(self, service, dispatcher, actor):
        estimate = service.create_estimate(EstimateCreate(customer_name="No Email"), actor)

        with pytest.raises(ValidationError):
            send_estimate(service, dispatcher, estimate.id, SendEstimateRequest(), actor)

        stored = service.get_estimate(estimate.id)
        assert stored.email_token is None
        assert stored.estimate_state == EstimateState.draft
        assert dispatcher.sent == []

    def test_dispatch_failure_keeps_token_and_state(self, service, dispatcher, scenario_a, actor):
        dispatcher.fail_sends = True

        with pytest.raises(ExternalDependencyError):
            send_estimate(service, dispatcher, scenario_a.id, SendEstimateRequest(), actor)

        stored = service.get_estimate(scenario_a.id)
        assert stored.email_token
        assert stored.client_state is None

        dispatcher.fail_sends = False
        retried = send_estimate(service, dispatcher, scenario_a.id, SendEstimateRequest(), actor)
        assert retried.email_token == stored.email_token
        assert retried.client_state == ClientState.sent

    def test_resend(self, service, dispatcher, scenario_a, actor):
        send_estimate(service, dispatcher, scenario_a.id, SendEstimateRequest(), actor)

        estimate = send_estimate(service, dispatcher, scenario_a.id, SendEstimateRequest(), actor)

        assert estimate.email_sent_count == 2
        assert len(dispatcher.sent) == 2
