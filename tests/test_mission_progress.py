"""任务进度评估单元测试。"""

from decimal import Decimal

from orderpay.services.mission_progress import evaluate, progress_percentage


class TestEvaluate:

    def test_reaching_target_flips_achieved(self):
        r = evaluate(Decimal(4), Decimal(1), Decimal(5))
        assert r.new_progress == Decimal(5)
        assert r.achieved is True
        assert r.newly_achieved is True
        assert r.progress_percentage == 100

    def test_below_target(self):
        r = evaluate(Decimal(1), Decimal(1), Decimal(5))
        assert r.new_progress == Decimal(2)
        assert r.achieved is False
        assert r.progress_percentage == 40

    def test_already_achieved_not_newly(self):
        r = evaluate(Decimal(5), Decimal(1), Decimal(5), already_achieved=True)
        assert r.achieved is True
        assert r.newly_achieved is False
        assert r.new_progress == Decimal(6)

    def test_achieved_never_reversed(self):
        """目标被调高后已达成任务也不回退。"""
        r = evaluate(Decimal(5), Decimal(0), Decimal(100), already_achieved=True)
        assert r.achieved is True

    def test_negative_contribution_ignored(self):
        r = evaluate(Decimal(3), Decimal(-2), Decimal(5))
        assert r.new_progress == Decimal(3)

    def test_zero_target(self):
        r = evaluate(Decimal(0), Decimal(1), Decimal(0))
        assert r.achieved is True
        assert r.progress_percentage == 0


class TestProgressPercentage:

    def test_capped_at_100(self):
        assert progress_percentage(Decimal(12), Decimal(5)) == 100

    def test_rounds(self):
        assert progress_percentage(Decimal(1), Decimal(3)) == 33
        assert progress_percentage(Decimal(2), Decimal(3)) == 67

    def test_zero_target(self):
        assert progress_percentage(Decimal(3), Decimal(0)) == 0
