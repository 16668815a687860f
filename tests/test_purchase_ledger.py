"""
Tests for the purchase ledger and reward state machine.

Covers:
- Progress accumulation and earning on the threshold purchase
- Idempotent purchase and refund recording
- FIFO locking with splits and multiple thresholds in one purchase
- Refund attribution and refund-driven revocation
- The progress invariant: in_progress quantity equals the unlocked active sum
"""
import pytest
from datetime import timedelta
from unittest.mock import patch
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from frequent_buyer.extensions import db
from frequent_buyer.models import PurchaseEvent, Reward, RewardStatus, AuditLogEntry, AuditAction
from frequent_buyer.services.purchase_ledger import (
    ALREADY_PROCESSED,
    NO_CUSTOMER,
    VARIATION_NOT_QUALIFYING,
    NO_MATCHING_PURCHASE,
)
from frequent_buyer.services.reward_state_machine import RewardStateMachine, REFUND_REVOKE_REASON
from frequent_buyer.utils.dates import utcnow
from frequent_buyer.utils.exceptions import ValidationError


def days_ago(days):
    return utcnow() - timedelta(days=days)


def unlocked_sum(tenant_id, offer_id, customer_id='cust-1'):
    return RewardStateMachine(tenant_id).current_quantity(customer_id, offer_id)


def rewards(tenant_id, status=None, customer_id='cust-1'):
    query = Reward.query.filter_by(tenant_id=tenant_id, customer_id=customer_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(Reward.id).all()


def assert_progress_invariant(tenant_id, offer_id, customer_id='cust-1'):
    in_progress = rewards(tenant_id, RewardStatus.IN_PROGRESS.value, customer_id)
    assert len(in_progress) <= 1
    expected = unlocked_sum(tenant_id, offer_id, customer_id)
    if in_progress:
        assert in_progress[0].current_quantity == expected
    else:
        assert expected <= 0


class TestRecordPurchase:
    """Tests for PurchaseLedger.record_purchase."""

    def test_first_purchase_starts_progress(self, app, sample_offer, buy):
        result = buy(1)

        assert result['processed'] is True
        assert result['offer_id'] == sample_offer.id
        assert result['reward']['status'] == 'in_progress'
        assert result['reward']['current_quantity'] == 1
        assert result['reward']['required_quantity'] == 3

        event = PurchaseEvent.query.get(result['purchase_event_id'])
        assert event.idempotency_key == 'ORDER-1:VAR-1:1'
        assert event.reward_id is None
        assert event.window_end_date > event.window_start_date

    def test_progress_accumulates_across_variations(self, app, sample_offer, buy):
        buy(1, variation_id='VAR-1')
        result = buy(1, variation_id='VAR-2')

        assert result['reward']['current_quantity'] == 2
        assert len(rewards(sample_offer.tenant_id)) == 1
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

    def test_threshold_purchase_earns_reward(self, app, sample_offer, buy, fake_pos):
        buy(1)
        buy(1)
        result = buy(1)

        assert result['reward']['status'] == 'earned'
        earned = rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)
        assert len(earned) == 1
        reward = earned[0]
        assert reward.current_quantity == 3
        assert reward.earned_at is not None
        assert PurchaseEvent.query.filter_by(reward_id=reward.id).count() == 3
        assert rewards(sample_offer.tenant_id, RewardStatus.IN_PROGRESS.value) == []

        # POS activation runs after commit
        fake_pos.create_customer_group.assert_called_once()
        fake_pos.add_customer_to_group.assert_called_once_with('cust-1', reward.pos_group_id)
        assert reward.pos_discount_id is not None

    def test_earning_is_audited(self, app, sample_offer, buy):
        buy(3)
        entry = AuditLogEntry.query.filter_by(action=AuditAction.REWARD_EARNED.value).one()
        assert entry.old_state == 'in_progress'
        assert entry.new_state == 'earned'
        assert entry.customer_id == 'cust-1'
        assert len(entry.details['locked_event_ids']) == 1

    def test_duplicate_purchase_is_ignored(self, app, sample_offer, buy):
        buy(1, order_id='ORDER-A')
        result = buy(1, order_id='ORDER-A')

        assert result == {'processed': False, 'reason': ALREADY_PROCESSED}
        assert PurchaseEvent.query.count() == 1
        assert rewards(sample_offer.tenant_id)[0].current_quantity == 1

    def test_non_qualifying_variation(self, app, sample_offer, buy):
        result = buy(1, variation_id='VAR-OTHER')
        assert result == {'processed': False, 'reason': VARIATION_NOT_QUALIFYING}
        assert PurchaseEvent.query.count() == 0

    def test_inactive_offer_does_not_qualify(self, app, sample_offer, buy):
        sample_offer.is_active = False
        db.session.commit()
        assert buy(1)['reason'] == VARIATION_NOT_QUALIFYING

    def test_missing_customer(self, app, sample_offer, buy):
        result = buy(1, customer_id=None)
        assert result == {'processed': False, 'reason': NO_CUSTOMER}

    def test_non_positive_quantity_rejected(self, app, sample_offer, buy):
        with pytest.raises(ValidationError):
            buy(0)

    def test_customers_progress_independently(self, app, sample_offer, buy):
        buy(2, customer_id='cust-1')
        buy(2, customer_id='cust-2')

        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id, 'cust-1')
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id, 'cust-2')
        assert rewards(sample_offer.tenant_id, customer_id='cust-2')[0].current_quantity == 2


class TestFifoLocking:
    """Tests for locking exactly the required units, oldest first."""

    def test_crossing_purchase_is_split(self, app, sample_offer, buy):
        buy(2, order_id='ORDER-1', purchased_at=days_ago(20))
        result = buy(2, order_id='ORDER-2', purchased_at=days_ago(19))

        earned_id = result['reward']['earned_reward_ids'][0]
        assert result['reward']['status'] == 'in_progress'
        assert result['reward']['current_quantity'] == 1

        parent = PurchaseEvent.query.filter_by(order_id='ORDER-2', split_role=None).one()
        children = {
            c.split_role: c for c in PurchaseEvent.query.filter_by(split_from_event_id=parent.id).all()
        }
        assert children['locked'].quantity == 1
        assert children['locked'].reward_id == earned_id
        assert children['locked'].idempotency_key == f'ORDER-2:VAR-1:2:split_locked:{earned_id}'
        assert children['excess'].quantity == 1
        assert children['excess'].reward_id is None
        assert parent.reward_id is None

        locked_total = db.session.query(func.sum(PurchaseEvent.quantity)).filter(
            PurchaseEvent.reward_id == earned_id,
            PurchaseEvent.not_superseded(),
        ).scalar()
        assert locked_total == 3
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

    def test_oldest_purchase_locked_first(self, app, sample_offer, buy):
        buy(1, order_id='LATE', purchased_at=days_ago(14))
        buy(1, order_id='EARLY', purchased_at=days_ago(48))
        buy(2, order_id='LAST', purchased_at=days_ago(13))

        earned = rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)[0]
        locked_orders = {
            e.order_id for e in PurchaseEvent.query.filter(
                PurchaseEvent.reward_id == earned.id, PurchaseEvent.not_superseded()
            ).all()
        }
        assert locked_orders == {'EARLY', 'LATE', 'LAST'}
        assert unlocked_sum(sample_offer.tenant_id, sample_offer.id) == 1

    def test_single_purchase_crossing_multiple_thresholds(self, app, sample_offer, buy, fake_pos):
        result = buy(7)

        assert len(result['reward']['earned_reward_ids']) == 2
        assert result['reward']['status'] == 'in_progress'
        assert result['reward']['current_quantity'] == 1
        assert len(rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)) == 2
        assert fake_pos.create_reward_discount.call_count == 2
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

    def test_exact_multiple_leaves_no_in_progress(self, app, sample_offer, buy):
        result = buy(6)
        assert result['reward']['status'] == 'earned'
        assert result['reward']['current_quantity'] == 0
        assert rewards(sample_offer.tenant_id, RewardStatus.IN_PROGRESS.value) == []


class TestRecordRefund:
    """Tests for PurchaseLedger.record_refund."""

    def test_refund_reduces_unlocked_progress(self, app, sample_offer, buy, ledger):
        buy(2, order_id='ORDER-1')
        result = ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id='RL-1')

        assert result['processed'] is True
        assert result['reward_affected'] is False
        refund = PurchaseEvent.query.get(result['refund_event_ids'][0])
        assert refund.quantity == -1
        assert refund.is_refund is True
        assert refund.idempotency_key == f'refund:RL-1:{refund.original_event_id}'
        assert rewards(sample_offer.tenant_id)[0].current_quantity == 1
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

    def test_duplicate_refund_is_ignored(self, app, sample_offer, buy, ledger):
        buy(2, order_id='ORDER-1')
        ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id='RL-1')
        result = ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id='RL-1')

        assert result['reason'] == ALREADY_PROCESSED
        assert PurchaseEvent.query.filter_by(is_refund=True).count() == 1
        assert rewards(sample_offer.tenant_id)[0].current_quantity == 1

    def test_refund_without_purchase(self, app, sample_offer, ledger):
        result = ledger.record_refund('ORDER-404', 'VAR-1', 1, refund_line_id='RL-1')
        assert result['reason'] == NO_MATCHING_PURCHASE

    def test_refund_requires_line_id(self, app, sample_offer, ledger):
        with pytest.raises(ValidationError):
            ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id=None)

    def test_refund_prefers_unlocked_units(self, app, sample_offer, buy, ledger):
        buy(2, order_id='ORDER-1', purchased_at=days_ago(20))
        buy(2, order_id='ORDER-2', purchased_at=days_ago(19))
        earned = rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)[0]

        result = ledger.record_refund('ORDER-2', 'VAR-1', 1, refund_line_id='RL-1')

        assert result['revoked_reward_ids'] == []
        refund = PurchaseEvent.query.get(result['refund_event_ids'][0])
        assert PurchaseEvent.query.get(refund.original_event_id).split_role == 'excess'
        assert Reward.query.get(earned.id).status == RewardStatus.EARNED.value
        assert rewards(sample_offer.tenant_id, RewardStatus.IN_PROGRESS.value)[0].current_quantity == 0
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

    def test_refund_below_threshold_revokes(self, app, sample_offer, buy, ledger, fake_pos):
        buy(1, order_id='ORDER-1')
        buy(1, order_id='ORDER-2')
        buy(1, order_id='ORDER-3')
        earned = rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)[0]

        result = ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id='RL-1')

        assert result['revoked_reward_ids'] == [earned.id]
        reward = Reward.query.get(earned.id)
        assert reward.status == RewardStatus.REVOKED.value
        assert reward.revocation_reason == REFUND_REVOKE_REASON
        assert PurchaseEvent.query.filter_by(reward_id=earned.id).count() == 0

        # The two surviving units count toward fresh progress
        in_progress = rewards(sample_offer.tenant_id, RewardStatus.IN_PROGRESS.value)
        assert in_progress[0].current_quantity == 2
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

        fake_pos.delete_catalog_objects.assert_called_once()
        assert reward.pos_discount_id is None

    def test_refund_of_redeemed_units_keeps_reward(self, app, sample_offer, buy, ledger):
        from frequent_buyer.services.redemption_processor import RedemptionProcessor
        buy(3, order_id='ORDER-1')
        earned = rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)[0]
        RedemptionProcessor(sample_offer.tenant_id).redeem(earned.id)

        result = ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id='RL-1')

        assert result['processed'] is True
        assert result['revoked_reward_ids'] == []
        assert Reward.query.get(earned.id).status == RewardStatus.REDEEMED.value


class TestConcurrentFirstPurchase:
    """Tests for the one in_progress reward per pair guarantee."""

    @staticmethod
    def reward_insert_conflict():
        return IntegrityError(
            'INSERT INTO loyalty_rewards', {}, Exception('UNIQUE constraint failed: uq_reward_one_in_progress')
        )

    def collide_once(self, machine):
        real_recompute = machine.recompute
        calls = []

        def recompute(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise self.reward_insert_conflict()
            return real_recompute(*args, **kwargs)

        return recompute

    def test_second_in_progress_reward_rejected(self, app, sample_offer, buy):
        buy(1)
        db.session.add(Reward(
            tenant_id=sample_offer.tenant_id,
            offer_id=sample_offer.id,
            customer_id='cust-1',
            status=RewardStatus.IN_PROGRESS.value,
            current_quantity=1,
            required_quantity=3,
        ))

        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

        assert len(rewards(sample_offer.tenant_id, RewardStatus.IN_PROGRESS.value)) == 1

    def test_terminal_rewards_do_not_block_new_progress(self, app, sample_offer, buy):
        buy(3)
        buy(1)

        assert len(rewards(sample_offer.tenant_id, RewardStatus.EARNED.value)) == 1
        assert len(rewards(sample_offer.tenant_id, RewardStatus.IN_PROGRESS.value)) == 1

    def test_purchase_retried_after_reward_conflict(self, app, sample_offer, ledger):
        with patch.object(ledger.machine, 'recompute', side_effect=self.collide_once(ledger.machine)):
            result = ledger.record_purchase('ORDER-1', 'VAR-1', 2, 'cust-1', unit_price_cents=4500)

        assert result['processed'] is True
        assert result['reward']['current_quantity'] == 2
        assert PurchaseEvent.query.count() == 1
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)

    def test_purchase_raises_when_conflict_persists(self, app, sample_offer, ledger):
        with patch.object(ledger.machine, 'recompute', side_effect=self.reward_insert_conflict()):
            with pytest.raises(IntegrityError):
                ledger.record_purchase('ORDER-1', 'VAR-1', 1, 'cust-1')

        assert PurchaseEvent.query.count() == 0

    def test_refund_retried_after_reward_conflict(self, app, sample_offer, buy, ledger):
        buy(2, order_id='ORDER-1')

        with patch.object(ledger.machine, 'recompute', side_effect=self.collide_once(ledger.machine)):
            result = ledger.record_refund('ORDER-1', 'VAR-1', 1, refund_line_id='RLI-1')

        assert result['processed'] is True
        assert len(result['refund_event_ids']) == 1
        assert PurchaseEvent.query.filter_by(is_refund=True).count() == 1
        assert unlocked_sum(sample_offer.tenant_id, sample_offer.id) == 1
        assert_progress_invariant(sample_offer.tenant_id, sample_offer.id)


class TestEndToEnd:
    """Two-unit offer through earn, refund-driven revoke and re-earn."""

    def test_earn_refund_revoke_and_recover(self, app, sample_offer, buy, ledger, fake_pos):
        sample_offer.required_quantity = 2
        db.session.commit()
        tenant_id = sample_offer.tenant_id

        first = buy(1, order_id='ORDER-A', purchased_at=days_ago(20))
        assert first['reward']['status'] == 'in_progress'
        assert first['reward']['current_quantity'] == 1

        second = buy(1, order_id='ORDER-B', purchased_at=days_ago(19))
        earned_id = second['reward']['reward_id']
        assert second['reward']['status'] == 'earned'
        assert PurchaseEvent.query.filter_by(reward_id=earned_id).count() == 2
        fake_pos.create_reward_discount.assert_called_once()

        refund = ledger.record_refund('ORDER-A', 'VAR-1', 1, refund_line_id='RL-A')
        assert refund['revoked_reward_ids'] == [earned_id]
        assert Reward.query.get(earned_id).status == RewardStatus.REVOKED.value
        event_b = PurchaseEvent.query.filter_by(order_id='ORDER-B').one()
        assert event_b.reward_id is None

        # Purchase B is unlocked again; A nets to zero
        in_progress = rewards(tenant_id, RewardStatus.IN_PROGRESS.value)
        assert in_progress[0].current_quantity == 1
        assert_progress_invariant(tenant_id, sample_offer.id)

        third = buy(1, order_id='ORDER-C', purchased_at=days_ago(18))
        assert third['reward']['status'] == 'earned'
        new_reward = Reward.query.get(third['reward']['reward_id'])
        locked_orders = {e.order_id for e in PurchaseEvent.query.filter_by(reward_id=new_reward.id).all()}
        assert locked_orders == {'ORDER-B', 'ORDER-C'}
        assert_progress_invariant(tenant_id, sample_offer.id)
