"""
Tests for escrowflow_core.tx_result — one outcome shape for every response.
"""

import pytest

from escrowflow_core.errors import LedgerRejected, OutcomeUnknown
from escrowflow_core.tx_result import (
    OutcomeStatus,
    categorize,
    expired_outcome,
    is_final_preliminary,
    normalize_submission,
    unknown_outcome,
)

HASH = "C0FFEE" * 10 + "C0FF"


class TestCategorize:

    @pytest.mark.parametrize("code, category", [
        ("tesSUCCESS", "success"),
        ("tecNO_PERMISSION", "claimed_cost_only"),
        ("tefPAST_SEQ", "failure"),
        ("telINSUF_FEE_P", "local_error"),
        ("temMALFORMED", "malformed"),
        ("terQUEUED", "retry"),
        ("", "unknown"),
        ("weird", "unknown"),
    ])
    def test_families(self, code, category):
        assert categorize(code) == category

    def test_final_preliminary(self):
        assert is_final_preliminary("temBAD_FEE")
        assert is_final_preliminary("tefPAST_SEQ")
        assert not is_final_preliminary("tesSUCCESS")
        assert not is_final_preliminary("terQUEUED")
        assert not is_final_preliminary("")


class TestNormalize:

    def test_validated_success(self):
        resp = {"result": {"hash": HASH, "validated": True, "ledger_index": 55,
                           "meta": {"TransactionResult": "tesSUCCESS",
                                    "delivered_amount": "1000"}}}
        out = normalize_submission(resp)
        assert out.succeeded
        assert out.code == "tesSUCCESS"
        assert out.hash == HASH
        assert out.ledger_index == 55
        assert out.delivered_amount == "1000"
        assert out.raise_for_status() is out

    def test_validated_tec_is_rejected(self):
        resp = {"result": {"validated": True,
                           "meta": {"TransactionResult": "tecNO_PERMISSION"}}}
        out = normalize_submission(resp, tx_hash=HASH)
        assert out.status is OutcomeStatus.REJECTED
        assert out.hash == HASH
        assert out.category == "claimed_cost_only"

    def test_tx_json_hash_used(self):
        resp = {"result": {"tx_json": {"hash": HASH}, "engine_result": "terQUEUED"}}
        assert normalize_submission(resp).hash == HASH

    def test_final_preliminary_is_rejected(self):
        resp = {"result": {"engine_result": "temMALFORMED",
                           "engine_result_message": "Malformed transaction."}}
        out = normalize_submission(resp, tx_hash=HASH)
        assert out.status is OutcomeStatus.REJECTED
        assert out.message == "Malformed transaction."

    def test_not_validated_is_unknown(self):
        out = normalize_submission({"result": {"engine_result": "tesSUCCESS"}}, tx_hash=HASH)
        assert out.status is OutcomeStatus.UNKNOWN
        assert out.code == "tesSUCCESS"

    def test_none_response_is_unknown(self):
        out = normalize_submission(None, tx_hash=HASH)
        assert out.status is OutcomeStatus.UNKNOWN
        assert out.raw == {}

    def test_preliminary_carried_into_unknown(self):
        out = normalize_submission({"result": {}}, tx_hash=HASH, preliminary="terQUEUED")
        assert out.code == "terQUEUED"


class TestRaiseForStatus:

    def test_rejected_raises_with_raw_code(self):
        resp = {"result": {"validated": True, "meta": {"TransactionResult": "tecNO_TARGET"}}}
        with pytest.raises(LedgerRejected) as exc:
            normalize_submission(resp, tx_hash=HASH).raise_for_status("EscrowFinish", sequence=9)
        err = exc.value
        assert err.result_code == "tecNO_TARGET"
        assert err.result_category == "claimed_cost_only"
        assert err.details["sequence"] == 9
        assert err.details["hash"] == HASH
        assert "EscrowFinish" in err.message

    def test_unknown_raises_outcome_unknown(self):
        with pytest.raises(OutcomeUnknown) as exc:
            unknown_outcome(HASH, "timeout").raise_for_status("EscrowCreate", sequence=3)
        assert exc.value.details["hash"] == HASH
        assert exc.value.http_status == 504
        assert "reconcile" in exc.value.message

    def test_expired_is_rejected(self):
        out = expired_outcome(HASH, 120, "terQUEUED")
        assert out.status is OutcomeStatus.REJECTED
        assert out.code == "tefMAX_LEDGER"
        assert "120" in out.message and "terQUEUED" in out.message

    def test_to_dict(self):
        d = unknown_outcome(HASH, "timeout").to_dict()
        assert d["status"] == "unknown"
        assert d["hash"] == HASH
        assert d["validated"] is False
