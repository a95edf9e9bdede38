"""Tests for redemption stats."""

from cashu_redeem.stats import RedemptionStats


MINT = "https://mint.example.com"


class TestRedemptionStats:
    def test_empty(self):
        data = RedemptionStats().to_dict()
        assert data["totalRedemptions"] == 0
        assert data["successRate"] == 0.0
        assert data["recentRedemptions"] == []

    def test_paid_and_failed(self):
        stats = RedemptionStats()
        stats.record("r1", True, amount=21000, fee=420, mint=MINT, destination="admin@example.org")
        stats.record("r2", True, amount=1000, fee=20, mint=MINT, destination="admin@example.org")
        stats.record("r3", False, amount=500, mint=MINT, error_kind="AlreadySpent")
        stats.record("r4", False, error_kind="InvalidFormat")

        data = stats.to_dict()
        assert data["totalRedemptions"] == 4
        assert data["totalPaid"] == 2
        assert data["totalFailed"] == 2
        assert data["totalAmount"] == 22000
        assert data["totalFees"] == 440
        assert data["successRate"] == 0.5
        assert data["uniqueDestinations"] == 1
        assert data["mints"][MINT] == {"redemptions": 3, "paid": 2, "failed": 1, "amount": 22000}
        assert data["failures"] == {"AlreadySpent": 1, "InvalidFormat": 1}

    def test_failed_amount_not_counted(self):
        stats = RedemptionStats()
        stats.record("r1", False, amount=500, error_kind="EndpointUnreachable")
        assert stats.total_amount == 0

    def test_recent_newest_first(self):
        stats = RedemptionStats()
        for i in range(25):
            stats.record(f"r{i}", True, amount=1)
        recent = stats.to_dict()["recentRedemptions"]
        assert len(recent) == 20
        assert recent[0]["redeemId"] == "r24"
        assert recent[-1]["redeemId"] == "r5"

    def test_ring_buffer_bounded(self):
        stats = RedemptionStats(max_recent=3)
        for i in range(10):
            stats.record(f"r{i}", False)
        assert len(stats._recent) == 3
        assert stats.total_failed == 10
        assert stats.to_dict()["failures"] == {"Unknown": 10}
