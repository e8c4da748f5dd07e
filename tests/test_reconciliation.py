"""
Test suite for reconciliation

Tests matching of statement rows against individual and batch payment
indexes, tolerance handling, summaries and session records.
"""

import pytest
from decimal import Decimal

from repayment_engine.exceptions import MalformedStatement
from repayment_engine.reconciliation import (
    MatchSource, MatchType, ReconciliationMatcher, ReconciliationSession,
    aggregate_references, build_session, summarize
)
from repayment_engine.statement import ReconciliationRow


def statement(*pairs):
    return [
        ReconciliationRow(row_index=i, external_reference=ref, amount=Decimal(amount))
        for i, (ref, amount) in enumerate(pairs, start=1)
    ]


class TestReconciliationMatcher:
    """Test statement row matching"""

    def setup_method(self):
        """Set up test fixtures"""
        self.matcher = ReconciliationMatcher(Decimal('0.01'))
        self.transactions = aggregate_references([
            ("RRR-001", Decimal('76042.78'), "Ada Obi", None),
            ("RRR-002", Decimal('76042.78'), "Bayo Ade", None),
            ("RRR-002", Decimal('73957.22'), "Bayo Ade", None),
        ])
        self.batches = aggregate_references([
            ("RRR-B1", Decimal('30000'), "Ministry of Works", "https://receipts/b1"),
        ])

    def test_mixed_statement(self):
        """Test exact, mismatched and unmatched rows in one statement"""
        rows = statement(("RRR-001", '76042.78'), ("RRR-B1", '29000'), ("RRR-404", '100'))

        results = self.matcher.match(rows, self.transactions, self.batches)

        assert [r.match_type for r in results] == [
            MatchType.EXACT, MatchType.AMOUNT_MISMATCH, MatchType.UNMATCHED
        ]
        assert results[0].source == MatchSource.INDIVIDUAL
        assert results[0].beneficiary_names == "Ada Obi"
        assert results[1].source == MatchSource.BATCH
        assert results[1].batch_name == "Ministry of Works"
        assert results[1].difference == Decimal('-1000')
        assert results[2].system_amount is None
        assert results[2].difference is None

    def test_advance_rows_are_summed(self):
        """Test every row of one payment counts toward its reference"""
        results = self.matcher.match(statement(("RRR-002", '150000.00')), self.transactions, self.batches)

        assert results[0].match_type == MatchType.EXACT
        assert results[0].system_amount == Decimal('150000.00')
        assert results[0].beneficiary_names == "Bayo Ade"

    def test_reference_normalization(self):
        """Test references match regardless of case and whitespace"""
        rows = statement((" rrr-001 ", '76042.78'), ("Rrr-B1", '30000'))

        results = self.matcher.match(rows, self.transactions, self.batches)

        assert all(r.match_type == MatchType.EXACT for r in results)

    def test_individual_takes_precedence(self):
        """Test an individual payment wins over a batch with the same reference"""
        batches = aggregate_references([("RRR-001", Decimal('99'), "Dup Batch", None)])

        results = self.matcher.match(statement(("RRR-001", '76042.78')), self.transactions, batches)

        assert results[0].source == MatchSource.INDIVIDUAL
        assert results[0].match_type == MatchType.EXACT

    def test_tolerance_boundary(self):
        """Test differences under one cent are exact, one cent is a mismatch"""
        index = aggregate_references([("R", Decimal('100.00'), "", None)])

        within = self.matcher.match(statement(("R", '100.005')), index, {})
        at = self.matcher.match(statement(("R", '100.01')), index, {})

        assert within[0].match_type == MatchType.EXACT
        assert at[0].match_type == MatchType.AMOUNT_MISMATCH

    def test_empty_statement(self):
        """Test matching an empty statement is rejected"""
        with pytest.raises(MalformedStatement):
            self.matcher.match([], self.transactions, self.batches)


class TestAggregation:
    """Test reference index aggregation"""

    def test_distinct_names_in_order(self):
        """Test names are de-duplicated and joined in first-seen order"""
        index = aggregate_references([
            ("RRR-9", Decimal('10'), "Zed", None),
            ("rrr-9", Decimal('20'), "Amy", None),
            ("RRR-9 ", Decimal('30'), "Zed", None),
            ("", Decimal('40'), "Blank", None),
        ])

        assert list(index) == ["rrr-9"]
        assert index["rrr-9"].amount == Decimal('60')
        assert index["rrr-9"].label == "Zed, Amy"


class TestSummaryAndSession:
    """Test reconciliation summaries and session records"""

    def setup_method(self):
        """Set up test fixtures"""
        matcher = ReconciliationMatcher(Decimal('0.01'))
        index = aggregate_references([
            ("RRR-001", Decimal('76042.78'), "Ada Obi", None),
            ("RRR-B1", Decimal('30000'), "", None),
        ])
        self.results = matcher.match(
            statement(("RRR-001", '76042.78'), ("RRR-B1", '29000'), ("RRR-404", '100')),
            index, {}
        )

    def test_summarize(self):
        """Test counts and totals"""
        summary = summarize(self.results)

        assert summary.total_records == 3
        assert summary.matched_count == 1
        assert summary.mismatch_count == 1
        assert summary.unmatched_count == 1
        assert summary.statement_total == Decimal('105142.78')
        assert summary.matched_amount == Decimal('76042.78')
        assert not summary.is_fully_matched
        assert summary.can_save

    def test_session_keeps_only_exact_rows(self):
        """Test the session stores full detail for exact matches only"""
        session = build_session(self.results, " Ministry of Works ", 3, 2024,
                                file_name="march.xlsx", notes="  ")

        assert session.organization == "Ministry of Works"
        assert session.matched_count == 1
        assert session.unmatched_count == 1
        assert len(session.matches) == 1
        assert session.matches[0]['external_reference'] == "RRR-001"
        assert session.matches[0]['source'] == "individual"
        assert session.notes is None

        restored = ReconciliationSession.from_dict(session.to_dict())
        assert restored.matched_amount == Decimal('76042.78')

    def test_session_validation(self):
        """Test sessions need an organization, a valid month and a match"""
        with pytest.raises(ValueError, match="Organization"):
            build_session(self.results, "  ", 3, 2024)
        with pytest.raises(ValueError, match="month"):
            build_session(self.results, "Org", 13, 2024)
        with pytest.raises(ValueError, match="exact match"):
            build_session(self.results[2:], "Org", 3, 2024)
