"""网关关联号解析单元测试。"""

import pytest

from orderpay.models.schemas import PaymentStage
from orderpay.services.transaction_id import (
    MalformedIdentifier,
    build_transaction_id,
    parse_transaction_id,
)


class TestParseTransactionId:

    @pytest.mark.parametrize("token,stage", [
        ("DP", PaymentStage.DOWN),
        ("FULL", PaymentStage.FULL),
        ("CLR", PaymentStage.CLEARANCE),
        ("CLEARANCE", PaymentStage.CLEARANCE),
        ("dp", PaymentStage.DOWN),
    ])
    def test_stage_tokens(self, token, stage):
        tid = parse_transaction_id(f"ORD123-{token}")
        assert tid.order_number == "ORD123"
        assert tid.stage == stage
        assert tid.attempt is None

    def test_order_number_with_dashes(self):
        """订单号本身含 "-"，从最后一个分隔符切分。"""
        tid = parse_transaction_id("1234-2026-10-19-K3ZQ8A-DP")
        assert tid.order_number == "1234-2026-10-19-K3ZQ8A"
        assert tid.stage == PaymentStage.DOWN

    def test_attempt_suffix(self):
        tid = parse_transaction_id("1234-2026-10-19-K3ZQ8A-CLEARANCE-1760000000000")
        assert tid.order_number == "1234-2026-10-19-K3ZQ8A"
        assert tid.stage == PaymentStage.CLEARANCE
        assert tid.attempt == 1760000000000

    def test_numeric_tail_without_stage_rejected(self):
        with pytest.raises(MalformedIdentifier):
            parse_transaction_id("ORD-123")

    def test_no_separator(self):
        with pytest.raises(MalformedIdentifier, match="格式错误"):
            parse_transaction_id("ORD123DP")

    def test_empty(self):
        with pytest.raises(MalformedIdentifier):
            parse_transaction_id("")

    def test_unknown_stage(self):
        with pytest.raises(MalformedIdentifier, match="未知结算阶段"):
            parse_transaction_id("ORD123-INSTALLMENT")

    def test_empty_order_number(self):
        with pytest.raises(MalformedIdentifier, match="缺少订单号"):
            parse_transaction_id("-FULL")


class TestBuildTransactionId:

    def test_inverse_of_parse(self):
        cid = build_transaction_id("1234-2026-10-19-K3ZQ8A", PaymentStage.DOWN)
        assert cid == "1234-2026-10-19-K3ZQ8A-DP"
        assert parse_transaction_id(cid).stage == PaymentStage.DOWN

    def test_clearance_with_attempt(self):
        cid = build_transaction_id("ORD1", PaymentStage.CLEARANCE, 42)
        assert cid == "ORD1-CLR-42"
        tid = parse_transaction_id(cid)
        assert (tid.order_number, tid.stage, tid.attempt) == ("ORD1", PaymentStage.CLEARANCE, 42)
