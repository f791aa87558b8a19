"""
Lifecycle Transition Applier Tests

Covers the pure completion planner and the applier's idempotence under
duplicate and competing completion signals.
"""
import pytest
from sqlalchemy import select

from db.models import (
    Experience, PaymentAttempt, PaymentAttemptStatus, LifecycleState, AnalyticsEvent
)
from services.delivery_service import DeliveryService
from services.errors import UnknownAttemptError, ValidationError
from services.lifecycle_service import (
    LifecycleService, TransitionSource, CompletionPlan, plan_payment_completion
)


class TestPlanPaymentCompletion:
    """The planner is pure: snapshot in, decision out."""

    def test_pending_attempt_on_preview_applies(self):
        plan = plan_payment_completion("PENDING", "pay_1", "PREVIEW", None)
        assert plan == CompletionPlan.APPLY

    def test_pending_attempt_on_draft_applies(self):
        assert plan_payment_completion("PENDING", "pay_1", "DRAFT", None) == CompletionPlan.APPLY

    def test_failed_attempt_can_still_complete(self):
        # A late capture after a failure event is still a real payment
        assert plan_payment_completion("FAILED", "pay_1", "PREVIEW", None) == CompletionPlan.APPLY

    def test_completed_attempt_is_a_noop(self):
        plan = plan_payment_completion("COMPLETED", "pay_1", "SENT", "pay_1")
        assert plan == CompletionPlan.ALREADY_COMPLETED

    @pytest.mark.parametrize("state", ["PAID", "SENT", "OPENED", "RESPONDED"])
    def test_paid_by_other_attempt(self, state):
        plan = plan_payment_completion("PENDING", "pay_2", state, "pay_1")
        assert plan == CompletionPlan.PAID_BY_OTHER

    def test_paid_by_same_attempt(self):
        assert plan_payment_completion("PENDING", "pay_1", "PAID", "pay_1") == CompletionPlan.ALREADY_PAID


async def _seed(session, state="PREVIEW", attempts=1, gateway="razorpay"):
    experience = Experience(
        experience_type="CRUSH",
        lifecycle_state=state,
        content={},
        amount_due=4900,
        currency="INR",
        recipient_name="Asha",
        recipient_email="asha@example.com",
        sender_name="Ravi",
    )
    session.add(experience)
    await session.flush()

    created = []
    for n in range(attempts):
        attempt = PaymentAttempt(
            experience_id=experience.experience_id,
            gateway=gateway,
            gateway_reference=f"order_seed_{experience.experience_id}_{n}",
            status=PaymentAttemptStatus.PENDING.value,
            amount=4900,
            currency="INR",
        )
        session.add(attempt)
        created.append(attempt)
    await session.commit()
    return experience.experience_id, [(a.attempt_id, a.gateway_reference) for a in created]


async def _load(session_factory, experience_id):
    async with session_factory() as session:
        experience = (await session.execute(
            select(Experience).where(Experience.experience_id == experience_id)
        )).scalar_one()
        attempts = (await session.execute(
            select(PaymentAttempt).where(PaymentAttempt.experience_id == experience_id)
        )).scalars().all()
        events = (await session.execute(
            select(AnalyticsEvent.event_type).where(AnalyticsEvent.experience_id == experience_id)
        )).scalars().all()
        return experience, {a.attempt_id: a for a in attempts}, list(events)


def _service(session, email_service):
    return LifecycleService(session, DeliveryService(session, email_service, app_url="https://app.test"))


class TestApplyPaymentCompleted:

    async def test_applies_and_delivers(self, db_session, session_factory, email_service):
        experience_id, [(attempt_id, reference)] = await _seed(db_session)

        result = await _service(db_session, email_service).apply_payment_completed(
            reference, TransitionSource.RAZORPAY_WEBHOOK, gateway_payment_id="pay_rzp_9"
        )

        assert result.applied is True
        assert result.email_sent is True
        assert result.lifecycle_state == "SENT"

        experience, attempts, events = await _load(session_factory, experience_id)
        assert experience.lifecycle_state == LifecycleState.SENT.value
        assert experience.paid_attempt_id == attempt_id
        assert experience.paid_at is not None
        assert attempts[attempt_id].status == "COMPLETED"
        assert attempts[attempt_id].gateway_payment_id == "pay_rzp_9"
        assert attempts[attempt_id].completion_source == "razorpay_webhook"
        assert events.count("PAYMENT_COMPLETED") == 1
        assert events.count("EMAIL_SENT") == 1
        assert len(email_service.sent_to("asha@example.com")) == 1
        assert f"https://app.test/v/{experience_id}" in email_service.sent[0]["html"]

    async def test_second_application_is_noop(self, db_session, session_factory, email_service):
        experience_id, [(attempt_id, reference)] = await _seed(db_session)
        service = _service(db_session, email_service)

        await service.apply_payment_completed(reference, TransitionSource.CLIENT_VERIFY)
        again = await service.apply_payment_completed(reference, TransitionSource.RAZORPAY_WEBHOOK)

        assert again.applied is False
        assert again.outcome == CompletionPlan.ALREADY_COMPLETED.value
        assert len(email_service.sent) == 1

        experience, attempts, events = await _load(session_factory, experience_id)
        assert experience.lifecycle_state == "SENT"
        # The first trigger to land owns the completion
        assert attempts[attempt_id].completion_source == "client_verify"
        assert events.count("PAYMENT_COMPLETED") == 1

    async def test_attempt_id_works_as_reference(self, db_session, email_service):
        _, [(attempt_id, _)] = await _seed(db_session, gateway="manual")

        result = await _service(db_session, email_service).apply_payment_completed(
            attempt_id, TransitionSource.ADMIN_APPROVAL
        )
        assert result.applied is True

    async def test_second_attempt_after_paid_is_ignored(self, db_session, session_factory, email_service):
        experience_id, [(first_id, first_ref), (second_id, second_ref)] = await _seed(db_session, attempts=2)
        service = _service(db_session, email_service)

        await service.apply_payment_completed(first_ref, TransitionSource.RAZORPAY_WEBHOOK)
        result = await service.apply_payment_completed(second_ref, TransitionSource.RAZORPAY_WEBHOOK)

        assert result.applied is False
        assert result.outcome == CompletionPlan.PAID_BY_OTHER.value

        experience, attempts, events = await _load(session_factory, experience_id)
        assert experience.paid_attempt_id == first_id
        assert attempts[first_id].status == "COMPLETED"
        assert attempts[second_id].status == "PENDING"
        assert "DUPLICATE_PAYMENT_IGNORED" in events
        assert len(email_service.sent) == 1

    async def test_unknown_reference(self, db_session, email_service):
        with pytest.raises(UnknownAttemptError):
            await _service(db_session, email_service).apply_payment_completed(
                "order_missing", TransitionSource.RAZORPAY_WEBHOOK
            )

    async def test_experience_mismatch_rejected(self, db_session, session_factory, email_service):
        experience_id, [(_, reference)] = await _seed(db_session)

        with pytest.raises(ValidationError):
            await _service(db_session, email_service).apply_payment_completed(
                reference, TransitionSource.CLIENT_VERIFY, experience_id="exp_someoneelse"
            )

        experience, _, _ = await _load(session_factory, experience_id)
        assert experience.lifecycle_state == "PREVIEW"

    async def test_email_failure_keeps_paid(self, db_session, session_factory, email_service):
        experience_id, [(_, reference)] = await _seed(db_session)
        email_service.fail = True

        result = await _service(db_session, email_service).apply_payment_completed(
            reference, TransitionSource.STRIPE_WEBHOOK
        )

        assert result.applied is True
        assert result.email_sent is False
        assert result.delivery_error

        experience, _, events = await _load(session_factory, experience_id)
        assert experience.lifecycle_state == "PAID"
        assert experience.delivery_started_at is None
        assert "EMAIL_FAILED" in events


class TestNonPaymentEvents:

    async def test_mark_failed_only_from_pending(self, db_session, session_factory, email_service):
        experience_id, [(attempt_id, reference)] = await _seed(db_session)
        service = _service(db_session, email_service)

        assert await service.mark_attempt_failed(reference, "BAD_REQUEST_ERROR", "Card declined") is True
        assert await service.mark_attempt_failed(reference, "BAD_REQUEST_ERROR", "Card declined") is False

        _, attempts, events = await _load(session_factory, experience_id)
        assert attempts[attempt_id].status == "FAILED"
        assert attempts[attempt_id].error_description == "Card declined"
        assert events.count("PAYMENT_FAILED") == 1

    async def test_refund_keeps_lifecycle_state(self, db_session, session_factory, email_service):
        experience_id, [(attempt_id, reference)] = await _seed(db_session, gateway="stripe")
        service = _service(db_session, email_service)
        await service.apply_payment_completed(reference, TransitionSource.STRIPE_WEBHOOK, gateway_payment_id="pi_123")

        assert await service.mark_refunded("pi_123") is True
        assert await service.mark_refunded("pi_unknown") is False

        experience, attempts, events = await _load(session_factory, experience_id)
        assert attempts[attempt_id].status == "REFUNDED"
        assert experience.lifecycle_state == "SENT"
        assert "PAYMENT_REFUNDED" in events


async def _snapshot(session_factory, experience_id, attempt_id):
    """Rows as a trigger saw them before a competing trigger committed"""
    async with session_factory() as session:
        experience = (await session.execute(
            select(Experience).where(Experience.experience_id == experience_id)
        )).scalar_one()
        attempt = (await session.execute(
            select(PaymentAttempt).where(PaymentAttempt.attempt_id == attempt_id)
        )).scalar_one()
    return attempt, experience


class TestCompetingCompletions:
    """The conditional updates decide the winner when snapshots go stale."""

    async def test_same_attempt_completed_concurrently(self, db_session, session_factory, email_service):
        experience_id, [(attempt_id, reference)] = await _seed(db_session)
        attempt, experience = await _snapshot(session_factory, experience_id, attempt_id)

        async with session_factory() as winner:
            won = await _service(winner, email_service).apply_payment_completed(
                reference, TransitionSource.RAZORPAY_WEBHOOK
            )
        assert won.applied is True

        async with session_factory() as loser:
            plan = await _service(loser, email_service)._complete(
                attempt, experience, TransitionSource.CLIENT_VERIFY, "pay_late"
            )

        assert plan == CompletionPlan.ALREADY_COMPLETED
        experience, attempts, events = await _load(session_factory, experience_id)
        assert attempts[attempt_id].completion_source == "razorpay_webhook"
        assert attempts[attempt_id].gateway_payment_id is None
        assert events.count("PAYMENT_COMPLETED") == 1
        assert len(email_service.sent) == 1

    async def test_other_attempt_loses_and_rolls_back(self, db_session, session_factory, email_service, monkeypatch):
        experience_id, [(first_id, first_ref), (second_id, second_ref)] = await _seed(db_session, attempts=2)

        async with session_factory() as winner:
            await _service(winner, email_service).apply_payment_completed(first_ref, TransitionSource.STRIPE_WEBHOOK)

        # The second trigger read the experience while it was still PREVIEW
        monkeypatch.setattr(
            "services.lifecycle_service.plan_payment_completion", lambda *args: CompletionPlan.APPLY
        )
        async with session_factory() as loser:
            result = await _service(loser, email_service).apply_payment_completed(
                second_ref, TransitionSource.RAZORPAY_WEBHOOK, gateway_payment_id="pay_second"
            )

        assert result.applied is False
        assert result.outcome == CompletionPlan.PAID_BY_OTHER.value
        assert result.lifecycle_state == "SENT"

        experience, attempts, events = await _load(session_factory, experience_id)
        assert experience.paid_attempt_id == first_id
        assert [a.status for a in attempts.values()].count("COMPLETED") == 1
        assert attempts[second_id].status == "PENDING"
        assert attempts[second_id].gateway_payment_id is None
        assert attempts[second_id].completion_source is None
        assert events.count("PAYMENT_COMPLETED") == 1
        assert events.count("DUPLICATE_PAYMENT_IGNORED") == 1
        assert len(email_service.sent) == 1

    async def test_refunded_attempt_replayed_keeps_refund(self, db_session, session_factory, email_service):
        experience_id, [(attempt_id, reference)] = await _seed(db_session, gateway="stripe")
        attempt, experience = await _snapshot(session_factory, experience_id, attempt_id)

        async with session_factory() as winner:
            service = _service(winner, email_service)
            await service.apply_payment_completed(reference, TransitionSource.STRIPE_WEBHOOK, gateway_payment_id="pi_1")
            await service.mark_refunded("pi_1")

        async with session_factory() as loser:
            plan = await _service(loser, email_service)._complete(
                attempt, experience, TransitionSource.STRIPE_WEBHOOK, "pi_1"
            )

        assert plan == CompletionPlan.ALREADY_PAID
        experience, attempts, _ = await _load(session_factory, experience_id)
        assert attempts[attempt_id].status == "REFUNDED"
        assert experience.lifecycle_state == "SENT"
        assert len(email_service.sent) == 1
