"""
Compensation Ledger Unit Tests
==============================
Per-effect rollback strategies, on-chain verification of unknown
outcomes, idempotent replay and history maintenance.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio


OP_ID = "op_ledger"


@pytest.fixture
def executor():
    return AsyncMock(return_value="compensation_sig")


@pytest.fixture
def store():
    from tests.mocks import MockMetadataStore

    return MockMetadataStore()


@pytest_asyncio.fixture
async def ledger(chain, encoder, store, executor, payer):
    from splforge.execution.compensation_ledger import CompensationLedger
    from splforge.execution.schemas import OperationKind

    ledger = CompensationLedger(chain, encoder, metadata_store=store, executor=executor)
    await ledger.track_operation(OP_ID, OperationKind.ASSET_CREATION, payer=payer)
    return ledger


@pytest.fixture
def effect(payer):
    """Factory for side effects attributed to the payer by default."""
    from splforge.execution.schemas import AccountType, EffectKind, Reversibility, SideEffect
    from tests.mocks import new_address

    def factory(kind="token", wallet=None, **details):
        wallet = wallet or payer
        target = details.pop("target", None) or new_address()
        if kind == "token":
            return SideEffect(
                EffectKind.ACCOUNT_CREATED, wallet, Reversibility.AUTO_REVERSIBLE, target,
                {"account_type": AccountType.TOKEN.value, "owner": wallet, **details},
            )
        if kind == "mint":
            return SideEffect(
                EffectKind.ACCOUNT_CREATED, wallet, Reversibility.AUTO_REVERSIBLE, target,
                {"account_type": AccountType.MINT.value, "owner": wallet, **details},
            )
        if kind == "metadata":
            return SideEffect(
                EffectKind.METADATA_REGISTERED, wallet, Reversibility.AUTO_REVERSIBLE, target, details,
            )
        return SideEffect(
            EffectKind.TRANSFER, wallet, Reversibility.REQUIRES_MANUAL_ACTION, target,
            {"amount": 10, "mint": "MintX", "to": "Recipient1", **details},
        )

    return factory


async def _add(ledger, effect, signature, outcome=None, group_index=0, label="group", op_id=OP_ID):
    from splforge.execution.schemas import CompensationRecord

    await ledger.add_record(op_id, CompensationRecord(
        record_id=f"rec_{signature}",
        operation_id=op_id,
        group_index=group_index,
        group_label=label,
        signature=signature,
        effect=effect,
        method="sequential",
        attempt=1,
    ))
    if outcome is not None:
        await ledger.record_outcome(op_id, signature, outcome)


class TestTracking:
    @pytest.mark.asyncio
    async def test_duplicate_tracking_rejected(self, ledger):
        from splforge.execution.schemas import OperationKind

        with pytest.raises(ValueError):
            await ledger.track_operation(OP_ID, OperationKind.DISTRIBUTION)

    @pytest.mark.asyncio
    async def test_unknown_operation(self, ledger):
        with pytest.raises(KeyError):
            await ledger.rollback("op_missing")

    @pytest.mark.asyncio
    async def test_completed_operation_is_sealed(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect(), "sig1", SubmissionOutcome.LANDED)
        await ledger.mark_complete(OP_ID)

        with pytest.raises(ValueError):
            await _add(ledger, effect(), "sig2")
        with pytest.raises(ValueError):
            await ledger.rollback(OP_ID)

    @pytest.mark.asyncio
    async def test_has_landed(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect(), "sig1", SubmissionOutcome.FAILED)
        assert not ledger.has_landed(OP_ID)

        await _add(ledger, effect(), "sig2", SubmissionOutcome.LANDED)
        assert ledger.has_landed(OP_ID)


class TestStrategies:
    @pytest.mark.asyncio
    async def test_empty_token_account_closed(self, ledger, chain, effect, executor, payer):
        from splforge.execution.schemas import SubmissionOutcome

        account = effect("token")
        chain.token_accounts[account.target] = 0
        await _add(ledger, account, "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        action = report.actions[0]
        assert (action.action, action.status) == ("close_account", "completed")
        assert action.signature == "compensation_sig"
        assert executor.await_args.args[0] == payer
        assert report.fully_resolved

    @pytest.mark.asyncio
    async def test_funded_token_account_needs_manual_action(self, ledger, chain, effect, executor):
        from splforge.execution.schemas import SubmissionOutcome

        account = effect("token")
        chain.token_accounts[account.target] = 500
        await _add(ledger, account, "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert [a.status for a in report.manual_actions] == ["pending_manual"]
        assert "500" in report.manual_actions[0].detail
        executor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_token_account(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("token"), "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "not_needed"

    @pytest.mark.asyncio
    async def test_empty_mint_disabled(self, ledger, chain, effect):
        from splforge.execution.schemas import SubmissionOutcome

        mint = effect("mint")
        chain.mint_supplies[mint.target] = 0
        await _add(ledger, mint, "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert (report.actions[0].action, report.actions[0].status) == ("disable_mint", "completed")

    @pytest.mark.asyncio
    async def test_minted_supply_blocks_disable(self, ledger, chain, effect):
        from splforge.execution.schemas import SubmissionOutcome

        mint = effect("mint")
        chain.mint_supplies[mint.target] = 1_000
        await _add(ledger, mint, "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].is_manual

    @pytest.mark.asyncio
    async def test_landed_transfer_flagged(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].is_manual
        assert "Recipient1" in report.actions[0].detail
        assert report.fully_resolved

    @pytest.mark.asyncio
    async def test_failed_transaction_needs_nothing(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.FAILED)

        report = await ledger.rollback(OP_ID)

        assert (report.actions[0].action, report.actions[0].status) == ("no_action", "not_needed")

    @pytest.mark.asyncio
    async def test_later_attempt_that_landed_wins(self, ledger, effect):
        """Two attempts of the same effect: the landed one decides."""
        from splforge.execution.schemas import SubmissionOutcome

        transfer = effect("transfer")
        await _add(ledger, transfer, "sig1", SubmissionOutcome.FAILED)
        await _add(ledger, transfer, "sig2", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert len(report.actions) == 1
        assert report.actions[0].is_manual

    @pytest.mark.asyncio
    async def test_latest_group_first(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("transfer"), "sig0", SubmissionOutcome.LANDED, 0, "first")
        await _add(ledger, effect("transfer"), "sig2", SubmissionOutcome.LANDED, 2, "last")

        report = await ledger.rollback(OP_ID)

        assert [a.group_label for a in report.actions] == ["last", "first"]
        assert len(report.for_group("first")) == 1

    @pytest.mark.asyncio
    async def test_executor_failure_stays_open(self, ledger, chain, effect, executor):
        from splforge.execution.schemas import SubmissionOutcome

        account = effect("token")
        chain.token_accounts[account.target] = 0
        await _add(ledger, account, "sig1", SubmissionOutcome.LANDED)
        executor.side_effect = ConnectionError("rpc down")

        report = await ledger.rollback(OP_ID)

        assert report.failed[0].status == "failed"
        assert not report.fully_resolved
        assert ledger.get_stats()["compensation_failures"] == 1

    @pytest.mark.asyncio
    async def test_ephemeral_signer_used_for_owned_account(self, chain, encoder, executor, effect, payer):
        from solders.keypair import Keypair
        from splforge.execution.compensation_ledger import CompensationLedger
        from splforge.execution.schemas import OperationKind, SubmissionOutcome

        owner = Keypair()
        ledger = CompensationLedger(chain, encoder, executor=executor)
        await ledger.track_operation("op_owned", OperationKind.POOL_CREATION, payer=payer, signers=[owner])
        account = effect("token", wallet=str(owner.pubkey()))
        chain.token_accounts[account.target] = 0
        await _add(ledger, account, "sig1", SubmissionOutcome.LANDED, op_id="op_owned")

        await ledger.rollback("op_owned")

        co_signers = executor.await_args.args[2]
        assert [kp.pubkey() for kp in co_signers] == [owner.pubkey()]


class TestMetadata:
    @pytest.mark.asyncio
    async def test_inline_uri(self, ledger, effect, store):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("metadata", uri="data:application/json;base64,e30="), "sig1",
                   SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "inline_no_action"

    @pytest.mark.asyncio
    async def test_hosted_uri_unpinned_even_if_not_landed(self, ledger, effect, store):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("metadata", uri="ipfs://bafyabc"), "sig1", SubmissionOutcome.FAILED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "unpinned"
        assert store.calls == ["ipfs://bafyabc"]

    @pytest.mark.asyncio
    async def test_store_failure_is_best_effort(self, ledger, effect, store):
        from splforge.execution.schemas import SubmissionOutcome

        store.fail = True
        await _add(ledger, effect("metadata", uri="ipfs://bafyabc"), "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "rollback_failed"
        assert report.fully_resolved

    @pytest.mark.asyncio
    async def test_no_store_configured(self, chain, encoder, effect):
        from splforge.execution.compensation_ledger import CompensationLedger
        from splforge.execution.schemas import OperationKind, SubmissionOutcome

        ledger = CompensationLedger(chain, encoder)
        await ledger.track_operation(OP_ID, OperationKind.METADATA_UPDATE)
        await _add(ledger, effect("metadata", uri="https://example.org/m.json"), "sig1", SubmissionOutcome.LANDED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "not_tracked"


class TestUnknownOutcomes:
    @pytest.mark.asyncio
    async def test_confirmed_on_chain_is_compensated(self, ledger, chain, effect):
        from splforge.execution.schemas import SubmissionOutcome
        from splforge.shared.execution.execution_result import TxState, TxStatus

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.UNKNOWN)
        chain.statuses["sig1"] = TxStatus(TxState.CONFIRMED)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].is_manual
        assert ledger.has_landed(OP_ID)

    @pytest.mark.asyncio
    async def test_not_found_means_not_landed(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.UNKNOWN)

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "not_needed"

    @pytest.mark.asyncio
    async def test_pending_stays_unresolved(self, ledger, chain, effect):
        from splforge.execution.schemas import SubmissionOutcome
        from splforge.shared.execution.execution_result import TxState, TxStatus

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.UNKNOWN)
        chain.statuses["sig1"] = TxStatus(TxState.PENDING)

        report = await ledger.rollback(OP_ID)

        assert [a.action for a in report.unverified] == ["verify"]
        assert not report.fully_resolved

    @pytest.mark.asyncio
    async def test_lookup_error_stays_unresolved(self, ledger, chain, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("transfer"), "sig1")
        chain.status_error = ConnectionError("rpc down")

        report = await ledger.rollback(OP_ID)

        assert report.actions[0].status == "unresolved"


class TestReplay:
    @pytest.mark.asyncio
    async def test_second_rollback_is_idempotent(self, ledger, chain, effect, executor):
        from splforge.execution.schemas import SubmissionOutcome

        account = effect("token")
        chain.token_accounts[account.target] = 0
        await _add(ledger, account, "sig1", SubmissionOutcome.LANDED)

        first = await ledger.rollback(OP_ID)
        second = await ledger.rollback(OP_ID)

        assert executor.await_count == 1
        assert second.replayed
        assert [a.to_dict() for a in second.actions] == [a.to_dict() for a in first.actions]

    @pytest.mark.asyncio
    async def test_replay_resolves_previously_unverified(self, ledger, chain, effect):
        from splforge.execution.schemas import SubmissionOutcome
        from splforge.shared.execution.execution_result import TxState, TxStatus

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.UNKNOWN)
        chain.statuses["sig1"] = TxStatus(TxState.PENDING)
        assert not (await ledger.rollback(OP_ID)).fully_resolved

        chain.statuses["sig1"] = TxStatus(TxState.CONFIRMED)
        report = await ledger.rollback(OP_ID)

        assert report.fully_resolved
        assert report.actions[0].is_manual

    @pytest.mark.asyncio
    async def test_concurrent_rollbacks_compensate_once(self, ledger, chain, effect, executor):
        from splforge.execution.schemas import SubmissionOutcome

        account = effect("token")
        chain.token_accounts[account.target] = 0
        await _add(ledger, account, "sig1", SubmissionOutcome.LANDED)

        reports = await asyncio.gather(ledger.rollback(OP_ID), ledger.rollback(OP_ID))

        assert executor.await_count == 1
        assert sorted(r.replayed for r in reports) == [False, True]


class TestReporting:
    @pytest.mark.asyncio
    async def test_multi_participant_grouped_by_wallet(self, chain, encoder, effect, payer):
        from splforge.execution.compensation_ledger import CompensationLedger
        from splforge.execution.schemas import OperationKind, SubmissionOutcome
        from tests.mocks import new_address

        other = new_address()
        ledger = CompensationLedger(chain, encoder)
        await ledger.track_operation(OP_ID, OperationKind.POOL_CREATION, payer=payer, multi_participant=True)
        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.LANDED, 0)
        await _add(ledger, effect("transfer", wallet=other), "sig2", SubmissionOutcome.LANDED, 1)
        await _add(ledger, effect("transfer"), "sig3", SubmissionOutcome.LANDED, 2)

        report = await ledger.rollback(OP_ID)

        grouped = report.by_wallet()
        assert set(grouped) == {payer, other}
        assert len(grouped[payer]) == 2
        assert [a.wallet for a in report.actions] == [payer, payer, other]
        assert len(report.to_dict()["manual_actions"]) == 3

    @pytest.mark.asyncio
    async def test_clear_history_drops_settled_only(self, chain, encoder, effect):
        from splforge.execution.compensation_ledger import CompensationLedger
        from splforge.execution.schemas import OperationKind

        ledger = CompensationLedger(chain, encoder)
        await ledger.track_operation("op_done", OperationKind.DISTRIBUTION)
        await ledger.track_operation("op_live", OperationKind.DISTRIBUTION)
        await ledger.mark_complete("op_done")
        for entry in ledger._operations.values():
            entry.updated_at -= 3600

        assert ledger.clear_history(60) == 1
        assert not ledger.is_tracked("op_done")
        assert ledger.is_tracked("op_live")

    @pytest.mark.asyncio
    async def test_stats(self, ledger, effect):
        from splforge.execution.schemas import SubmissionOutcome

        await _add(ledger, effect("transfer"), "sig1", SubmissionOutcome.LANDED)
        await ledger.rollback(OP_ID)

        stats = ledger.get_stats()
        assert stats["tracked"] == 1
        assert stats["records"] == 1
        assert stats["rollbacks"] == 1
        assert stats["manual_flags"] == 1
