"""Integration tests for the SQL table definitions and row mapping."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

pytestmark = pytest.mark.integration

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class TestDatabase:
    def test_models_importable(self):
        from tooltrust.db.models import (
            DisputeRow,
            FraudCheckRow,
            MutualClosureAuditRow,
            MutualClosureRow,
            VelocityLimitRow,
        )

        assert DisputeRow.__tablename__ == "disputes"
        assert MutualClosureRow.__tablename__ == "mutual_dispute_closures"
        assert MutualClosureAuditRow.__tablename__ == "mutual_closure_audit_log"
        assert FraudCheckRow.__tablename__ == "fraud_checks"
        assert VelocityLimitRow.__tablename__ == "velocity_limits"

    def test_dispute_columns(self):
        from tooltrust.db.models import DisputeRow

        columns = {c.name for c in DisputeRow.__table__.columns}
        assert {"rental_id", "status", "version", "document", "external_dispute_id"} <= columns

    def test_one_open_dispute_per_rental_index(self):
        from tooltrust.db.models import DisputeRow

        index = next(i for i in DisputeRow.__table__.indexes if i.name == "uq_disputes_open_rental")
        assert index.unique

    def test_velocity_limits_unique_per_type(self):
        from tooltrust.db.models import VelocityLimitRow

        names = {c.name for c in VelocityLimitRow.__table__.constraints}
        assert "uq_velocity_user_type" in names


class TestRowMapping:
    def test_dispute_document_keeps_version_from_row(self):
        from tooltrust.db.models import DisputeRow
        from tooltrust.db.repositories import _dispute_row, _to_dispute
        from tooltrust.domains.disputes.models import Dispute, DisputeStatus, DisputeType

        dispute = Dispute(
            rental_id="rental-1",
            initiated_by="renter-1",
            owner_id="owner-1",
            renter_id="renter-1",
            dispute_type=DisputeType.DAMAGE,
            title="Cracked housing",
            claimed_amount=Decimal("12.50"),
            status=DisputeStatus.UNDER_REVIEW,
            version=3,
        )

        values = _dispute_row(dispute)
        row = DisputeRow(**{**values, "version": 4})
        loaded = _to_dispute(row)

        assert values["status"] == "under_review"
        assert loaded.version == 4
        assert loaded.claimed_amount == Decimal("12.50")
        assert loaded.status == DisputeStatus.UNDER_REVIEW

    def test_velocity_limit_row(self):
        from tooltrust.db.repositories import _limit_row, _to_limit
        from tooltrust.domains.fraud.models import VelocityLimit, VelocityLimitType

        limit = VelocityLimit(
            user_id="user-1",
            limit_type=VelocityLimitType.DAILY_AMOUNT,
            time_window=VelocityLimitType.DAILY_AMOUNT.window,
            limit=Decimal("2500.00"),
            current_amount=Decimal("120.00"),
            current_transactions=2,
            window_start_time=NOW,
        )

        row = _limit_row(limit)

        assert row.limit_type == "daily_amount"
        assert _to_limit(row) == limit
