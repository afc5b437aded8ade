"""Tests for the milestone deadline sweep (suspension and penalty variants)."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select, update

from nexa_platform.domain.enums import (
    EscalationPolicy,
    MessageType,
    MilestoneStatus,
    MilestoneType,
    NotificationType,
    UserRole,
)
from nexa_platform.domain.models import CampaignTimeline, Message, Notification, Offer, User
from nexa_platform.domain.timeutils import as_utc, utcnow
from nexa_platform.infra.socket_relay import SocketRelay
from nexa_platform.services.deadline_monitor import (
    SUSPENSION_REASON,
    DeadlineMonitor,
    check_deadlines,
    penalty_reason,
)
from nexa_platform.services.notification_service import NotificationService

M = MilestoneStatus
NT = NotificationType


def _monitor(db, settings, policy=EscalationPolicy.SUSPENSION, **kwargs):
    kwargs.setdefault("send_email", False)
    return DeadlineMonitor(db, policy, settings=settings, **kwargs)


async def _notification_types(db, user_id):
    result = await db.execute(select(Notification.type).where(Notification.user_id == user_id))
    return sorted(result.scalars().all())


async def _fresh(db, model, obj_id):
    result = await db.execute(
        select(model).where(model.id == obj_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _system_messages(db, chat_room_id):
    result = await db.execute(
        select(Message).where(
            Message.chat_room_id == chat_room_id,
            Message.message_type == MessageType.SYSTEM.value,
        )
    )
    return result.scalars().all()


# ---------------------------------------------------------------------------
# Overdue warning
# ---------------------------------------------------------------------------


class TestOverdueWarning:

    async def test_flags_overdue_milestone_and_notifies_both_parties(
        self, db_session, settings, make_contract, make_milestone
    ):
        contract = await make_contract()
        milestone = await make_milestone(
            contract,
            milestone_type=MilestoneType.VIDEO_SUBMISSION.value,
            deadline=utcnow() - timedelta(days=1),
        )

        summary = await _monitor(db_session, settings).run()

        assert summary.processed == 1
        assert summary.warnings_sent == 1
        assert summary.penalties_applied == 0

        assert milestone.status == M.DELAYED.value
        assert milestone.is_delayed is True
        assert milestone.delay_notified_at is not None

        assert await _notification_types(db_session, contract.creator_id) == [NT.TIMELINE_OVERDUE.value]
        assert await _notification_types(db_session, contract.brand_id) == [NT.TIMELINE_OVERDUE.value]

        offer = await db_session.get(Offer, contract.offer_id)
        messages = await _system_messages(db_session, offer.chat_room_id)
        assert len(messages) == 1
        assert messages[0].sender_id is None
        assert "Video submission" in messages[0].message
        assert messages[0].offer_data["milestone_id"] == milestone.id

    async def test_second_sweep_sends_nothing_new(self, db_session, settings, make_contract, make_milestone):
        contract = await make_contract()
        milestone = await make_milestone(contract, deadline=utcnow() - timedelta(hours=3))

        await _monitor(db_session, settings).run()
        first_notified_at = milestone.delay_notified_at
        summary = await _monitor(db_session, settings).run()

        assert summary.warnings_sent == 0
        assert summary.processed == 0
        assert milestone.delay_notified_at == first_notified_at
        count = (await db_session.execute(select(Notification))).scalars().all()
        assert len(count) == 2

    async def test_ignores_completed_and_future_milestones(
        self, db_session, settings, make_contract, make_milestone
    ):
        contract = await make_contract()
        done = await make_milestone(contract, deadline=utcnow() - timedelta(days=2), status=M.COMPLETED.value)
        future = await make_milestone(contract, deadline=utcnow() + timedelta(days=2))

        summary = await _monitor(db_session, settings).run()

        assert summary.processed == 0
        assert done.status == M.COMPLETED.value
        assert future.is_delayed is False

    async def test_failure_on_one_milestone_does_not_stop_the_sweep(
        self, db_session, settings, make_contract, make_milestone
    ):
        first_contract = await make_contract()
        second_contract = await make_contract()
        first = await make_milestone(first_contract, deadline=utcnow() - timedelta(days=2))
        second = await make_milestone(second_contract, deadline=utcnow() - timedelta(days=1))
        first_id, second_id = first.id, second.id
        await db_session.commit()

        original = NotificationService.notify_timeline_overdue
        calls = []

        async def flaky(self, milestone, contract, justification_deadline):
            calls.append(milestone.id)
            if len(calls) == 1:
                raise RuntimeError("notification store unavailable")
            return await original(self, milestone, contract, justification_deadline)

        with patch.object(NotificationService, "notify_timeline_overdue", flaky):
            summary = await _monitor(db_session, settings).run()

        assert calls == [first_id, second_id]
        assert summary.processed == 2
        assert summary.warnings_sent == 1

        rows = (await db_session.execute(
            select(CampaignTimeline.id, CampaignTimeline.delay_notified_at)
        )).all()
        notified = {row.id: row.delay_notified_at for row in rows}
        assert notified[first_id] is None
        assert notified[second_id] is not None

    async def test_relay_receives_chat_and_notification_events(
        self, db_session, settings, make_contract, make_milestone
    ):
        contract = await make_contract()
        await make_milestone(contract, deadline=utcnow() - timedelta(days=1))
        relay = MagicMock(spec=SocketRelay)
        relay.emit = AsyncMock(return_value=True)

        await _monitor(db_session, settings, relay=relay).run()

        events = [call.args[0] for call in relay.emit.await_args_list]
        assert events.count("notification") == 2
        assert events.count("new_message") == 1

    async def test_sends_overdue_email_to_creator(self, db_session, settings, make_contract, make_milestone):
        contract = await make_contract()
        await make_milestone(contract, deadline=utcnow() - timedelta(days=1))
        creator = await db_session.get(User, contract.creator_id)

        with patch(
            "nexa_platform.services.deadline_monitor.email_service.send_milestone_overdue",
            new_callable=AsyncMock,
            return_value=True,
        ) as mock_send:
            await _monitor(db_session, settings, send_email=True).run()

        mock_send.assert_awaited_once()
        assert mock_send.await_args.args[0] == creator.email


# ---------------------------------------------------------------------------
# Suspension escalation
# ---------------------------------------------------------------------------


class TestSuspension:

    async def test_two_overdue_milestones_suspend_creator(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        await make_milestone(contract, MilestoneType.SCRIPT_SUBMISSION.value, deadline=utcnow() - timedelta(days=3))
        await make_milestone(contract, MilestoneType.SCRIPT_APPROVAL.value, deadline=utcnow() - timedelta(days=1))

        before = utcnow()
        summary = await _monitor(db_session, settings).run()

        assert summary.warnings_sent == 2
        assert summary.penalties_applied == 1
        assert creator.suspension_reason == SUSPENSION_REASON
        suspended_until = as_utc(creator.suspended_until)
        assert before + timedelta(days=7) <= suspended_until <= utcnow() + timedelta(days=7)
        assert NT.ACCOUNT_SUSPENDED.value in await _notification_types(db_session, creator.id)

    async def test_rerun_does_not_extend_suspension(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        await make_milestone(contract, MilestoneType.SCRIPT_SUBMISSION.value, deadline=utcnow() - timedelta(days=3))
        await make_milestone(contract, MilestoneType.SCRIPT_APPROVAL.value, deadline=utcnow() - timedelta(days=1))

        await _monitor(db_session, settings).run()
        first_until = creator.suspended_until
        summary = await _monitor(db_session, settings).run()

        assert summary.penalties_applied == 0
        assert creator.suspended_until == first_until
        types = await _notification_types(db_session, creator.id)
        assert types.count(NT.ACCOUNT_SUSPENDED.value) == 1

    async def test_active_suspension_is_not_replaced(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        existing_until = utcnow() + timedelta(days=2)
        creator = await make_user(suspended_until=existing_until, suspension_reason="Manual")
        contract = await make_contract(creator=creator)
        await make_milestone(contract, MilestoneType.SCRIPT_SUBMISSION.value, deadline=utcnow() - timedelta(days=3))
        await make_milestone(contract, MilestoneType.SCRIPT_APPROVAL.value, deadline=utcnow() - timedelta(days=1))

        summary = await _monitor(db_session, settings).run()

        assert summary.penalties_applied == 0
        assert creator.suspended_until == existing_until
        assert creator.suspension_reason == "Manual"

    async def test_single_overdue_milestone_does_not_suspend(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        await make_milestone(contract, deadline=utcnow() - timedelta(days=10))

        summary = await _monitor(db_session, settings).run()

        assert summary.penalties_applied == 0
        assert creator.suspended_until is None

    async def test_expired_suspension_can_be_renewed(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user(suspended_until=utcnow() - timedelta(days=1))
        contract = await make_contract(creator=creator)
        await make_milestone(contract, MilestoneType.SCRIPT_SUBMISSION.value, deadline=utcnow() - timedelta(days=3))
        await make_milestone(contract, MilestoneType.SCRIPT_APPROVAL.value, deadline=utcnow() - timedelta(days=1))

        summary = await _monitor(db_session, settings).run()

        assert summary.penalties_applied == 1
        assert as_utc(creator.suspended_until) > utcnow() + timedelta(days=6)

    async def test_overdue_milestones_of_non_creator_account_do_not_suspend(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        admin = await make_user(role=UserRole.ADMIN.value)
        contract = await make_contract(creator=admin)
        await make_milestone(contract, MilestoneType.SCRIPT_SUBMISSION.value, deadline=utcnow() - timedelta(days=3))
        await make_milestone(contract, MilestoneType.SCRIPT_APPROVAL.value, deadline=utcnow() - timedelta(days=1))

        summary = await _monitor(db_session, settings).run()

        assert summary.warnings_sent == 2
        assert summary.penalties_applied == 0
        assert admin.suspended_until is None
        assert NT.ACCOUNT_SUSPENDED.value not in await _notification_types(db_session, admin.id)


# ---------------------------------------------------------------------------
# Penalty escalation
# ---------------------------------------------------------------------------


class TestPenalty:

    async def test_milestone_overdue_a_week_penalizes_creator(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        milestone = await make_milestone(contract, deadline=utcnow() - timedelta(days=8))

        summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY).run()

        assert summary.warnings_sent == 1
        assert summary.penalties_applied == 1
        assert milestone.penalty_applied is True
        assert creator.penalty_milestone_id == milestone.id
        assert creator.penalty_reason == penalty_reason(7)
        assert as_utc(creator.penalty_until) > utcnow() + timedelta(days=6)
        assert NT.MILESTONE_PENALTY.value in await _notification_types(db_session, creator.id)

    async def test_recently_overdue_milestone_is_only_warned(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        milestone = await make_milestone(contract, deadline=utcnow() - timedelta(days=2))

        summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY).run()

        assert summary.warnings_sent == 1
        assert summary.penalties_applied == 0
        assert milestone.penalty_applied is False
        assert creator.penalty_until is None

    async def test_previously_warned_milestone_is_penalized_later(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        milestone = await make_milestone(
            contract,
            deadline=utcnow() - timedelta(days=9),
            status=M.DELAYED.value,
            is_delayed=True,
            delay_notified_at=utcnow() - timedelta(days=8),
        )

        summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY).run()

        assert summary.warnings_sent == 0
        assert summary.penalties_applied == 1
        assert milestone.penalty_applied is True

    async def test_active_penalty_is_not_extended(
        self, db_session, settings, make_user, make_contract, make_milestone
    ):
        existing_until = utcnow() + timedelta(days=3)
        creator = await make_user(penalty_until=existing_until, penalty_reason="Earlier")
        contract = await make_contract(creator=creator)
        milestone = await make_milestone(contract, deadline=utcnow() - timedelta(days=10))

        summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY).run()

        assert summary.penalties_applied == 0
        assert milestone.penalty_applied is False
        assert creator.penalty_until == existing_until
        assert creator.penalty_reason == "Earlier"

    async def test_penalty_applied_once(self, db_session, settings, make_user, make_contract, make_milestone):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        await make_milestone(contract, deadline=utcnow() - timedelta(days=8))

        await _monitor(db_session, settings, EscalationPolicy.PENALTY).run()
        summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY).run()

        assert summary.penalties_applied == 0
        types = await _notification_types(db_session, creator.id)
        assert types.count(NT.MILESTONE_PENALTY.value) == 1


# ---------------------------------------------------------------------------
# Claims lost to a concurrent sweep
# ---------------------------------------------------------------------------

MONITOR = "nexa_platform.services.deadline_monitor"


class TestLostClaims:

    async def test_milestone_flagged_by_another_sweep_sends_nothing(
        self, db_session, settings, make_contract, make_milestone, commit_before_claim
    ):
        contract = await make_contract()
        milestone = await make_milestone(contract, deadline=utcnow() - timedelta(days=1))
        offer = await db_session.get(Offer, contract.offer_id)
        await db_session.commit()
        milestone_id, creator_id, brand_id = milestone.id, contract.creator_id, contract.brand_id
        chat_room_id = offer.chat_room_id

        flagged_elsewhere = (
            update(CampaignTimeline)
            .where(CampaignTimeline.id == milestone_id)
            .values(status=M.DELAYED.value, is_delayed=True, delay_notified_at=utcnow())
        )

        with patch(f"{MONITOR}.email_service.send_milestone_overdue", new_callable=AsyncMock) as mock_send:
            with commit_before_claim(MONITOR, flagged_elsewhere, target=CampaignTimeline):
                summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY, send_email=True).run()

        assert summary.processed == 1
        assert summary.warnings_sent == 0
        assert summary.penalties_applied == 0
        mock_send.assert_not_awaited()
        assert await _notification_types(db_session, creator_id) == []
        assert await _notification_types(db_session, brand_id) == []
        assert await _system_messages(db_session, chat_room_id) == []

    async def test_creator_suspended_by_another_sweep_is_not_suspended_again(
        self, db_session, settings, make_user, make_contract, make_milestone, commit_before_claim
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        for kind, days in ((MilestoneType.SCRIPT_SUBMISSION, 3), (MilestoneType.SCRIPT_APPROVAL, 1)):
            await make_milestone(
                contract,
                kind.value,
                deadline=utcnow() - timedelta(days=days),
                status=M.DELAYED.value,
                is_delayed=True,
                delay_notified_at=utcnow() - timedelta(hours=12),
            )
        await db_session.commit()
        creator_id = creator.id

        suspended_until = utcnow() + timedelta(days=3)
        suspended_elsewhere = (
            update(User)
            .where(User.id == creator_id)
            .values(suspended_until=suspended_until, suspension_reason="Manual review")
        )

        with patch(f"{MONITOR}.email_service.send_account_suspended", new_callable=AsyncMock) as mock_send:
            with commit_before_claim(MONITOR, suspended_elsewhere, target=User):
                summary = await _monitor(db_session, settings, send_email=True).run()

        assert summary.warnings_sent == 0
        assert summary.penalties_applied == 0
        mock_send.assert_not_awaited()
        refreshed = await _fresh(db_session, User, creator_id)
        assert refreshed.suspension_reason == "Manual review"
        assert as_utc(refreshed.suspended_until) == suspended_until
        assert await _notification_types(db_session, creator_id) == []

    async def test_creator_penalized_by_another_sweep_keeps_milestone_unpenalized(
        self, db_session, settings, make_user, make_contract, make_milestone, commit_before_claim
    ):
        creator = await make_user()
        contract = await make_contract(creator=creator)
        milestone = await make_milestone(
            contract,
            deadline=utcnow() - timedelta(days=9),
            status=M.DELAYED.value,
            is_delayed=True,
            delay_notified_at=utcnow() - timedelta(days=8),
        )
        await db_session.commit()
        milestone_id, creator_id = milestone.id, creator.id

        penalized_elsewhere = (
            update(User)
            .where(User.id == creator_id)
            .values(penalty_until=utcnow() + timedelta(days=5), penalty_reason="Earlier milestone")
        )

        with patch(f"{MONITOR}.email_service.send_penalty_applied", new_callable=AsyncMock) as mock_send:
            with commit_before_claim(MONITOR, penalized_elsewhere, target=CampaignTimeline):
                summary = await _monitor(db_session, settings, EscalationPolicy.PENALTY, send_email=True).run()

        assert summary.penalties_applied == 0
        mock_send.assert_not_awaited()
        refreshed_milestone = await _fresh(db_session, CampaignTimeline, milestone_id)
        assert refreshed_milestone.penalty_applied is False
        assert refreshed_milestone.penalty_applied_at is None
        refreshed_creator = await _fresh(db_session, User, creator_id)
        assert refreshed_creator.penalty_reason == "Earlier milestone"
        assert refreshed_creator.penalty_milestone_id is None
        assert await _notification_types(db_session, creator_id) == []


async def test_check_deadlines_runs_with_defaults(db_session, settings, make_contract, make_milestone):
    contract = await make_contract()
    await make_milestone(contract, deadline=utcnow() - timedelta(hours=1))

    with patch("nexa_platform.services.deadline_monitor.email_service.send_milestone_overdue", new_callable=AsyncMock):
        summary = await check_deadlines(db_session, EscalationPolicy.SUSPENSION, settings=settings)

    assert summary.warnings_sent == 1


@pytest.mark.parametrize("policy", ["suspension", "penalty"])
async def test_policy_accepts_plain_strings(db_session, settings, policy):
    summary = await DeadlineMonitor(db_session, policy, settings=settings, send_email=False).run()
    assert summary.processed == 0
