"""
Tests for the authorisation state tracker (N-of-M approval lifecycle).
"""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from payguard.app.errors import ApprovalHashError, RejectionReason
from payguard.app.models.approvals import (
    ApprovalClaim,
    ApprovalState,
    Approver,
    AuthenticationMethod,
    AuthorisationSetting,
    AuthorisationType,
    UpdatePolicy,
)
from payguard.app.models.entities import (
    AccountIdentifier,
    AccountIdentifierType,
    BatchPayout,
    Counterparty,
    CurrencyType,
    EntityType,
    Payout,
    Payrun,
)
from payguard.app.services import authorisation as tracker
from payguard.app.services.approval_hash import compute_approval_hash
from payguard.app.services.claims import InMemoryClaimLedger

NOW = datetime(2025, 1, 6, 10, 30, tzinfo=timezone.utc)

ALICE = Approver(user_id="alice", roles={"approver"}, name="Alice")
BOB = Approver(user_id="bob", roles={"approver"}, name="Bob")
CAROL = Approver(user_id="carol", roles={"approver", "admin"}, name="Carol")


def make_payout(**overrides):
    values = dict(
        id=uuid4(),
        account_id=uuid4(),
        currency=CurrencyType.GBP,
        amount=Decimal("2500.00"),
        destination=Counterparty(
            name="Acme Supplies Ltd",
            identifier=AccountIdentifier(
                type=AccountIdentifierType.SCAN, sort_code="040404", account_number="12345678"
            ),
        ),
        description="Invoice 981",
    )
    values.update(overrides)
    return Payout(**values)


def claim_for(entity, amr=AuthenticationMethod.WEBAUTHN, signature=None, approval_hash=None):
    return ApprovalClaim(
        entity_id=entity.id,
        entity_type=EntityType(entity.entity_type),
        approval_hash=approval_hash or compute_approval_hash(entity),
        signature=signature or uuid4().hex,
        key_id="idp-signing-1",
        authentication_method=amr,
    )


@pytest.fixture
def payout():
    return make_payout()


@pytest.fixture
def ledger():
    return InMemoryClaimLedger()


@pytest.fixture
def two_of_n():
    return AuthorisationSetting(authorisation_type=AuthorisationType.PAYOUT, number_of_authorisers=2)


def approve(record, entity, setting, user, ledger, **claim_kwargs):
    outcome = tracker.authorise(record, entity, setting, user, claim_for(entity, **claim_kwargs), ledger, now=NOW)
    assert outcome.accepted, outcome.rejection
    return outcome.record


@pytest.fixture
def fully_approved(payout, two_of_n, ledger):
    record = tracker.new_record(payout, created_by="dave")
    record = approve(record, payout, two_of_n, ALICE, ledger)
    return approve(record, payout, two_of_n, BOB, ledger)


class TestLifecycle:
    def test_new_record_is_unapproved(self, payout, two_of_n):
        record = tracker.new_record(payout, created_by="dave")
        status = tracker.status(record, payout, two_of_n, ALICE)

        assert record.version == 0
        assert record.approval_hash == compute_approval_hash(payout)
        assert status.state == ApprovalState.UNAPPROVED
        assert status.authorisers_required_count == 2
        assert status.authorisers_completed_count == 0
        assert status.can_authorise is True
        assert status.has_current_user_authorised is False

    def test_first_approval_is_partial(self, payout, two_of_n, ledger):
        record = approve(tracker.new_record(payout), payout, two_of_n, ALICE, ledger)

        alice_view = tracker.status(record, payout, two_of_n, ALICE)
        assert alice_view.state == ApprovalState.PARTIALLY_APPROVED
        assert alice_view.authorisers_completed_count == 1
        assert alice_view.has_current_user_authorised is True
        assert alice_view.can_authorise is False

        bob_view = tracker.status(record, payout, two_of_n, BOB)
        assert bob_view.can_authorise is True
        assert bob_view.has_current_user_authorised is False

    def test_second_distinct_approval_is_full(self, fully_approved, payout, two_of_n):
        status = tracker.status(fully_approved, payout, two_of_n, CAROL)

        assert status.state == ApprovalState.FULLY_APPROVED
        assert status.authorisers_completed_count == 2
        assert status.can_authorise is False
        assert [a.approver_id for a in status.authorisations] == ["alice", "bob"]

    def test_authorisation_records_claim_details(self, payout, ledger):
        setting = AuthorisationSetting()
        outcome = tracker.authorise(
            tracker.new_record(payout),
            payout,
            setting,
            ALICE,
            claim_for(payout, amr=AuthenticationMethod.ONE_TIME_PASSWORD),
            ledger,
            now=NOW,
        )
        authorisation = outcome.record.authorisations[0]

        assert authorisation.approver_id == "alice"
        assert authorisation.approver_name == "Alice"
        assert authorisation.authorised_at == NOW
        assert authorisation.approval_hash == compute_approval_hash(payout)
        assert authorisation.authentication_method == AuthenticationMethod.ONE_TIME_PASSWORD

    def test_every_change_increments_version(self, payout, two_of_n, ledger):
        record = tracker.new_record(payout)
        record = approve(record, payout, two_of_n, ALICE, ledger)
        assert record.version == 1
        record = approve(record, payout, two_of_n, BOB, ledger)
        assert record.version == 2
        record = tracker.execute(record, payout, two_of_n, now=NOW).record
        assert record.version == 3

    def test_records_are_not_mutated(self, payout, two_of_n, ledger):
        record = tracker.new_record(payout)
        approve(record, payout, two_of_n, ALICE, ledger)
        assert record.authorisations == ()
        assert record.version == 0

    def test_allowed_methods_reported_in_status(self, payout, two_of_n):
        status = tracker.status(tracker.new_record(payout), payout, two_of_n)
        assert status.allowed_authentication_methods == [
            AuthenticationMethod.ONE_TIME_PASSWORD,
            AuthenticationMethod.WEBAUTHN,
        ]
        assert status.can_authorise is False


class TestAuthoriseRejections:
    def test_duplicate_approval_is_idempotent(self, payout, two_of_n, ledger):
        record = approve(tracker.new_record(payout), payout, two_of_n, ALICE, ledger)

        outcome = tracker.authorise(record, payout, two_of_n, ALICE, claim_for(payout), ledger, now=NOW)

        assert outcome.accepted
        assert outcome.duplicate is True
        assert outcome.record == record
        assert len(ledger) == 1
        assert tracker.status(outcome.record, payout, two_of_n).authorisers_completed_count == 1

    def test_duplicate_after_full_approval_is_still_accepted(self, fully_approved, payout, two_of_n, ledger):
        outcome = tracker.authorise(fully_approved, payout, two_of_n, BOB, claim_for(payout), ledger)
        assert outcome.accepted
        assert outcome.duplicate is True

    def test_third_approver_refused_when_fully_approved(self, fully_approved, payout, two_of_n, ledger):
        outcome = tracker.authorise(fully_approved, payout, two_of_n, CAROL, claim_for(payout), ledger)

        assert outcome.rejection.reason == RejectionReason.ALREADY_FULLY_APPROVED
        assert outcome.record == fully_approved

    def test_replayed_claim_is_refused(self, payout, two_of_n, ledger):
        claim = claim_for(payout)
        record = tracker.authorise(tracker.new_record(payout), payout, two_of_n, ALICE, claim, ledger).record

        outcome = tracker.authorise(record, payout, two_of_n, BOB, claim, ledger)

        assert outcome.rejection.reason == RejectionReason.REPLAYED_APPROVAL_CLAIM
        assert len(outcome.record.authorisations) == 1

    def test_claim_for_other_entity_is_refused(self, payout, two_of_n, ledger):
        other = make_payout()
        outcome = tracker.authorise(tracker.new_record(payout), payout, two_of_n, ALICE, claim_for(other), ledger)

        assert outcome.rejection.reason == RejectionReason.CLAIM_ENTITY_MISMATCH
        assert len(ledger) == 0

    def test_claim_with_other_entity_type_is_refused(self, payout, two_of_n, ledger):
        claim = claim_for(payout).model_copy(update={"entity_type": EntityType.PAYRUN})
        outcome = tracker.authorise(tracker.new_record(payout), payout, two_of_n, ALICE, claim, ledger)
        assert outcome.rejection.reason == RejectionReason.CLAIM_ENTITY_MISMATCH

    def test_entity_changed_since_approval_requested(self, payout, two_of_n, ledger):
        claim = claim_for(payout)
        changed = payout.model_copy(update={"amount": Decimal("25000.00")})

        outcome = tracker.authorise(tracker.new_record(payout), changed, two_of_n, ALICE, claim, ledger)

        assert outcome.rejection.reason == RejectionReason.APPROVAL_HASH_MISMATCH
        assert len(ledger) == 0

    def test_authorise_after_execution_is_refused(self, fully_approved, payout, two_of_n, ledger):
        executed = tracker.execute(fully_approved, payout, two_of_n).record
        outcome = tracker.authorise(executed, payout, two_of_n, CAROL, claim_for(payout), ledger)
        assert outcome.rejection.reason == RejectionReason.ALREADY_EXECUTED

    def test_stale_authorisations_are_dropped_on_next_approval(self, payout, two_of_n, ledger):
        record = approve(tracker.new_record(payout), payout, two_of_n, ALICE, ledger)
        changed = payout.model_copy(update={"amount": Decimal("1.00")})

        record = approve(record, changed, two_of_n, BOB, ledger)

        assert [a.approver_id for a in record.authorisations] == ["bob"]
        assert record.approval_hash == compute_approval_hash(changed)
        assert tracker.status(record, changed, two_of_n).state == ApprovalState.PARTIALLY_APPROVED

    def test_record_for_other_entity_raises(self, payout, two_of_n, ledger):
        record = tracker.new_record(make_payout())
        with pytest.raises(ValueError):
            tracker.authorise(record, payout, two_of_n, ALICE, claim_for(payout), ledger)
        with pytest.raises(ValueError):
            tracker.status(record, payout, two_of_n)


class TestEligibility:
    def test_creator_cannot_authorise(self, payout, ledger):
        setting = AuthorisationSetting(creator_cant_authorise=True)
        record = tracker.new_record(payout, created_by="alice")

        outcome = tracker.authorise(record, payout, setting, ALICE, claim_for(payout), ledger)

        assert outcome.rejection.reason == RejectionReason.INELIGIBLE_APPROVER
        assert tracker.status(record, payout, setting, ALICE).can_authorise is False
        assert tracker.status(record, payout, setting, BOB).can_authorise is True
        assert len(ledger) == 0

    def test_last_editor_cannot_authorise(self, payout, ledger):
        setting = AuthorisationSetting(editor_cant_authorise=True)
        record = tracker.update(tracker.new_record(payout), payout, setting, ALICE).record

        outcome = tracker.authorise(record, payout, setting, ALICE, claim_for(payout), ledger)
        assert outcome.rejection.reason == RejectionReason.INELIGIBLE_APPROVER

        assert tracker.authorise(record, payout, setting, BOB, claim_for(payout), ledger).accepted

    def test_eligible_roles(self, payout, ledger):
        setting = AuthorisationSetting(eligible_roles={"admin"})
        record = tracker.new_record(payout)

        refused = tracker.authorise(record, payout, setting, ALICE, claim_for(payout), ledger)
        assert refused.rejection.reason == RejectionReason.INELIGIBLE_APPROVER

        assert tracker.authorise(record, payout, setting, CAROL, claim_for(payout), ledger).accepted

    @pytest.mark.parametrize(
        "amr", [AuthenticationMethod.NONE, AuthenticationMethod.ONE_TIME_PASSWORD]
    )
    def test_authentication_method_must_be_allowed(self, payout, ledger, amr):
        setting = AuthorisationSetting(allowed_authentication_methods={AuthenticationMethod.WEBAUTHN})
        outcome = tracker.authorise(
            tracker.new_record(payout), payout, setting, ALICE, claim_for(payout, amr=amr), ledger
        )
        assert outcome.rejection.reason == RejectionReason.INELIGIBLE_APPROVER

    def test_single_approver_setting(self, payout, ledger):
        setting = AuthorisationSetting()
        record = approve(tracker.new_record(payout), payout, setting, ALICE, ledger)
        assert tracker.status(record, payout, setting).state == ApprovalState.FULLY_APPROVED


class TestVoiding:
    def test_critical_change_voids_status(self, fully_approved, payout, two_of_n):
        changed = payout.model_copy(update={"amount": Decimal("2500.01")})
        status = tracker.status(fully_approved, changed, two_of_n, ALICE)

        assert status.state == ApprovalState.UNAPPROVED
        assert status.authorisers_completed_count == 0
        assert status.can_authorise is True

    def test_non_critical_change_keeps_approval(self, fully_approved, payout, two_of_n):
        changed = payout.model_copy(update={"description": "Invoice 981 (revised)"})
        status = tracker.status(fully_approved, changed, two_of_n)
        assert status.state == ApprovalState.FULLY_APPROVED

    def test_update_with_critical_change_voids_authorisations(self, fully_approved, payout, two_of_n):
        changed = payout.model_copy(update={"destination": Counterparty(name="Someone Else")})

        outcome = tracker.update(fully_approved, changed, two_of_n, CAROL)

        assert outcome.accepted
        assert outcome.voided is True
        assert outcome.record.authorisations == ()
        assert outcome.record.approval_hash == compute_approval_hash(changed)
        assert outcome.record.last_updated_by == "carol"
        assert outcome.record.version == fully_approved.version + 1
        assert tracker.status(outcome.record, changed, two_of_n).state == ApprovalState.UNAPPROVED

    def test_update_without_critical_change_keeps_authorisations(self, fully_approved, payout, two_of_n):
        changed = payout.model_copy(update={"your_reference": "PO-77"})

        outcome = tracker.update(fully_approved, changed, two_of_n, CAROL)

        assert outcome.voided is False
        assert outcome.record.authorisations == fully_approved.authorisations
        assert tracker.status(outcome.record, changed, two_of_n).state == ApprovalState.FULLY_APPROVED

    def test_update_until_fully_approved(self, payout, ledger):
        setting = AuthorisationSetting(update_policy=UpdatePolicy.UNTIL_FULLY_APPROVED)
        partial_setting = AuthorisationSetting(number_of_authorisers=2, update_policy=UpdatePolicy.UNTIL_FULLY_APPROVED)
        record = approve(tracker.new_record(payout), payout, setting, ALICE, ledger)

        refused = tracker.update(record, payout, setting, BOB)
        assert refused.rejection.reason == RejectionReason.UPDATE_NOT_PERMITTED
        assert refused.record == record

        assert tracker.update(record, payout, partial_setting, BOB).accepted
        assert tracker.status(record, payout, setting).can_update is False

    def test_update_until_executed(self, fully_approved, payout, two_of_n):
        assert tracker.update(fully_approved, payout, two_of_n, CAROL).accepted

        executed = tracker.execute(fully_approved, payout, two_of_n).record
        refused = tracker.update(executed, payout, two_of_n, CAROL)

        assert refused.rejection.reason == RejectionReason.UPDATE_NOT_PERMITTED
        assert tracker.status(executed, payout, two_of_n).can_update is False

    def test_update_always_reopens_executed_entity(self, payout, ledger):
        setting = AuthorisationSetting(update_policy=UpdatePolicy.ALWAYS)
        record = approve(tracker.new_record(payout), payout, setting, ALICE, ledger)
        executed = tracker.execute(record, payout, setting).record
        changed = payout.model_copy(update={"amount": Decimal("3000.00")})

        outcome = tracker.update(executed, changed, setting, BOB)

        assert outcome.accepted
        assert outcome.voided is True
        assert outcome.record.executed_at is None
        assert tracker.status(outcome.record, changed, setting).state == ApprovalState.UNAPPROVED


class TestOwnershipAndPinning:
    def test_new_record_carries_merchant_and_setting(self, payout, two_of_n):
        record = tracker.new_record(payout, created_by="dave", merchant_id="merchant-1", setting=two_of_n)

        assert record.merchant_id == "merchant-1"
        assert record.setting == two_of_n

    def test_first_update_pins_setting(self, payout, two_of_n):
        record = tracker.new_record(payout, created_by="dave")

        outcome = tracker.update(record, payout, two_of_n, CAROL)

        assert outcome.record.setting == two_of_n

    def test_non_critical_update_keeps_pinned_setting(self, payout, two_of_n, ledger):
        record = tracker.new_record(payout, created_by="dave", setting=two_of_n)
        record = approve(record, payout, two_of_n, ALICE, ledger)
        changed = payout.model_copy(update={"description": "Invoice 981 (revised)"})

        outcome = tracker.update(record, changed, AuthorisationSetting(), CAROL)

        assert outcome.record.setting == two_of_n
        assert tracker.status(outcome.record, changed, outcome.record.setting).state == ApprovalState.PARTIALLY_APPROVED

    def test_critical_update_pins_new_setting(self, payout, two_of_n, ledger):
        record = tracker.new_record(payout, created_by="dave", setting=two_of_n)
        record = approve(record, payout, two_of_n, ALICE, ledger)
        changed = payout.model_copy(update={"amount": Decimal("20.00")})
        single = AuthorisationSetting()

        outcome = tracker.update(record, changed, single, CAROL)

        assert outcome.voided is True
        assert outcome.record.setting == single

    def test_update_policy_comes_from_pinned_setting(self, payout, ledger):
        pinned = AuthorisationSetting(update_policy=UpdatePolicy.UNTIL_FULLY_APPROVED)
        record = approve(tracker.new_record(payout, setting=pinned), payout, pinned, ALICE, ledger)

        outcome = tracker.update(record, payout, AuthorisationSetting(update_policy=UpdatePolicy.ALWAYS), BOB)

        assert outcome.rejection.reason == RejectionReason.UPDATE_NOT_PERMITTED


class TestExecute:
    def test_insufficient_approvers(self, payout, two_of_n, ledger):
        record = approve(tracker.new_record(payout), payout, two_of_n, ALICE, ledger)
        outcome = tracker.execute(record, payout, two_of_n)

        assert outcome.rejection.reason == RejectionReason.INSUFFICIENT_APPROVERS
        assert "1 of 2" in outcome.rejection.message

    def test_unapproved_entity_cannot_execute(self, payout, two_of_n):
        outcome = tracker.execute(tracker.new_record(payout), payout, two_of_n)
        assert outcome.rejection.reason == RejectionReason.INSUFFICIENT_APPROVERS

    def test_execute_fully_approved(self, fully_approved, payout, two_of_n):
        outcome = tracker.execute(fully_approved, payout, two_of_n, now=NOW)

        assert outcome.accepted
        assert outcome.record.executed_at == NOW
        assert tracker.status(outcome.record, payout, two_of_n).state == ApprovalState.EXECUTED

    def test_execute_twice(self, fully_approved, payout, two_of_n):
        executed = tracker.execute(fully_approved, payout, two_of_n).record
        outcome = tracker.execute(executed, payout, two_of_n)
        assert outcome.rejection.reason == RejectionReason.ALREADY_EXECUTED

    def test_execute_after_critical_change(self, fully_approved, payout, two_of_n):
        changed = payout.model_copy(update={"currency": CurrencyType.EUR})
        outcome = tracker.execute(fully_approved, changed, two_of_n)

        assert outcome.rejection.reason == RejectionReason.APPROVAL_HASH_MISMATCH
        assert outcome.record.executed_at is None

    def test_execute_draft_raises(self, two_of_n):
        draft = make_payout(destination=None)
        with pytest.raises(ApprovalHashError):
            tracker.execute(tracker.new_record(draft), draft, two_of_n)


class TestDrafts:
    def test_draft_has_no_approval_hash(self, two_of_n):
        draft = make_payout(destination=None)
        record = tracker.new_record(draft)
        status = tracker.status(record, draft, two_of_n, ALICE)

        assert record.approval_hash is None
        assert status.state == ApprovalState.UNAPPROVED
        assert status.authorisers_completed_count == 0

    def test_completing_draft_sets_hash(self, two_of_n):
        draft = make_payout(destination=None)
        complete = draft.model_copy(update={"destination": Counterparty(name="Acme")})

        outcome = tracker.update(tracker.new_record(draft), complete, two_of_n, ALICE)

        assert outcome.voided is False
        assert outcome.record.approval_hash == compute_approval_hash(complete)


class TestSettings:
    def test_type_specific_setting_wins(self):
        generic = AuthorisationSetting(number_of_authorisers=3)
        specific = AuthorisationSetting(authorisation_type=AuthorisationType.PAYOUT, number_of_authorisers=1)

        chosen = tracker.select_setting([generic, specific], AuthorisationType.PAYOUT)
        assert chosen is specific

    def test_other_type_settings_are_ignored(self):
        rule_setting = AuthorisationSetting(authorisation_type=AuthorisationType.RULE)
        assert tracker.select_setting([rule_setting], AuthorisationType.PAYOUT) is None

    def test_strictest_setting_wins_among_equals(self):
        low = AuthorisationSetting(number_of_authorisers=1)
        high = AuthorisationSetting(number_of_authorisers=2)
        assert tracker.select_setting([low, high], AuthorisationType.PAYOUT) is high

    @pytest.mark.parametrize(
        "amount,expected",
        [(Decimal("999.99"), 1), (Decimal("1000"), 2), (Decimal("9999"), 2), (Decimal("10000"), 3)],
    )
    def test_amount_bands(self, amount, expected):
        settings = [
            AuthorisationSetting(number_of_authorisers=1, amount_upper=Decimal("1000")),
            AuthorisationSetting(
                number_of_authorisers=2, amount_lower=Decimal("1000"), amount_upper=Decimal("10000")
            ),
            AuthorisationSetting(number_of_authorisers=3, amount_lower=Decimal("10000")),
        ]
        chosen = tracker.select_setting(settings, AuthorisationType.PAYOUT, amount)
        assert chosen.number_of_authorisers == expected

    def test_number_of_authorisers_cannot_be_negative(self):
        with pytest.raises(ValueError):
            AuthorisationSetting(number_of_authorisers=-1)

    def test_zero_authorisers_is_approved_as_created(self, payout):
        setting = AuthorisationSetting(number_of_authorisers=0)
        record = tracker.new_record(payout, created_by="dave")

        assert tracker.status(record, payout, setting).state == ApprovalState.FULLY_APPROVED
        assert tracker.execute(record, payout, setting, now=NOW).record.executed_at == NOW

    def test_batch_payout_uses_payout_settings_and_total(self):
        batch = BatchPayout(
            id=uuid4(),
            payouts=[make_payout(amount=Decimal("600")), make_payout(amount=Decimal("500"))],
        )
        assert tracker.authorisation_type_for(batch) == AuthorisationType.PAYOUT
        assert tracker.amount_for(batch) == Decimal("1100")

    def test_payrun_amount_and_type(self):
        payrun = Payrun(id=uuid4(), merchant_id=uuid4(), total_amount=Decimal("42"))
        assert tracker.authorisation_type_for(payrun) == AuthorisationType.PAYRUN
        assert tracker.amount_for(payrun) == Decimal("42")
