"""
Tests for the carrier feed parsers — CSV header resolution, email extraction, timestamps.
"""

from datetime import datetime

import pytest

from fulfillment.errors import CsvStructureError
from integrations.base import IngestionSummary, parse_timestamp
from integrations.csv_feed import parse_shipping_csv, resolve_columns
from integrations.email_feed import detect_status, extract_tracking_numbers, parse_shipping_email

NOW = datetime(2026, 3, 10, 12, 0, 0)


class TestResolveColumns:
    def test_matches_carrier_specific_headers(self):
        columns = resolve_columns(["AWB Number", "Current Status", "Event Date", "City", "Remarks"])
        assert columns == {
            "tracking_number": 0,
            "provider_status": 1,
            "occurred_at": 2,
            "location": 3,
            "description": 4,
        }

    def test_each_column_claimed_once(self):
        columns = resolve_columns(["Waybill", "State", "Timestamp"])
        assert columns["tracking_number"] == 0
        assert columns["provider_status"] == 1
        assert columns["occurred_at"] == 2
        assert "location" not in columns

    def test_header_case_and_whitespace_ignored(self):
        columns = resolve_columns(["  TRACKING NO ", " status "])
        assert columns == {"tracking_number": 0, "provider_status": 1}


class TestParseShippingCsv:
    def test_rows_become_events(self):
        content = (
            "AWB,Status,Date,City,Note\n"
            "AWB10000001,DEL,2026-03-01 10:00,Riyadh,Left at door\n"
            "AWB10000002,OFD,2026-03-01T08:30:00Z,Jeddah,\n"
        )
        result = parse_shipping_csv(content, "aramex")

        assert result.errors == []
        assert len(result.events) == 2
        first = result.events[0]
        assert first.tracking_number == "AWB10000001"
        assert first.carrier == "aramex"
        assert first.provider_status == "DEL"
        assert first.occurred_at == datetime(2026, 3, 1, 10, 0)
        assert first.location == "Riyadh"
        assert first.description == "Left at door"
        assert first.raw_data["AWB"] == "AWB10000001"
        assert result.events[1].occurred_at == datetime(2026, 3, 1, 8, 30)
        assert result.events[1].description is None

    def test_bad_rows_reported_not_fatal(self):
        content = (
            "AWB,Status,Date\n"
            "AWB10000001,DEL,2026-03-01 10:00\n"
            ",DEL,2026-03-01 10:00\n"
            "AWB10000003,SHP,not-a-date\n"
            "AWB10000004,,2026-03-01 10:00\n"
        )
        result = parse_shipping_csv(content, "aramex")

        assert [e.tracking_number for e in result.events] == ["AWB10000001"]
        assert result.errors == [
            "Row 3: missing tracking number or status",
            "Row 4: invalid date 'not-a-date'",
            "Row 5: missing tracking number or status",
        ]

    def test_blank_lines_skipped(self):
        content = "Tracking,Status\nT1000001,DEL\n,\nT1000002,SHP\n"
        result = parse_shipping_csv(content, "smsa", now=NOW)
        assert len(result.events) == 2
        assert result.errors == []

    def test_missing_date_column_uses_now(self):
        result = parse_shipping_csv("Tracking,Status\nT1000001,DEL\n", "smsa", now=NOW)
        assert result.events[0].occurred_at == NOW

    def test_missing_tracking_and_status_columns_rejected(self):
        with pytest.raises(CsvStructureError):
            parse_shipping_csv("Reference,Comment\nX1,hello\n", "aramex")

    def test_missing_status_column_rejected(self):
        with pytest.raises(CsvStructureError, match="provider_status"):
            parse_shipping_csv("Tracking,Comment\nT1000001,hello\n", "aramex")

    def test_empty_file_rejected(self):
        with pytest.raises(CsvStructureError):
            parse_shipping_csv("   ", "aramex")


class TestEmailParsing:
    def test_extracts_tracking_number_after_label(self):
        body = "Your shipment with Tracking Number: 1Z999AA10123456784 has been delivered."
        assert extract_tracking_numbers(body) == ["1Z999AA10123456784"]

    def test_distinct_numbers_in_order(self):
        body = "AWB# 12345678901 and AWB# 12345678901 and Waybill 98765432100 are out for delivery"
        assert extract_tracking_numbers(body) == ["12345678901", "98765432100"]

    def test_words_without_digits_ignored(self):
        assert extract_tracking_numbers("Your order has shipped, tracking details follow") == []

    def test_status_first_keyword_wins(self):
        assert detect_status("Package delivered after failed delivery attempt") == "delivered"
        assert detect_status("Your parcel is OUT FOR DELIVERY") == "out_for_delivery"
        assert detect_status("Currently in transit to the hub") == "in_transit"
        assert detect_status("Thank you for your purchase") == "unknown"

    def test_one_event_per_tracking_number(self):
        body = "Tracking: AWB10000001 and Tracking: AWB10000002 were picked up today"
        events = parse_shipping_email(body, "aramex", now=NOW)

        assert [e.tracking_number for e in events] == ["AWB10000001", "AWB10000002"]
        assert all(e.provider_status == "picked_up" for e in events)
        assert all(e.occurred_at == NOW for e in events)
        assert events[0].raw_data == {"source": "email"}

    def test_description_truncated(self):
        body = "Tracking: AWB10000001 delivered. " + "x" * 500
        events = parse_shipping_email(body, "aramex", now=NOW)
        assert len(events[0].description) == 200


class TestTimestamps:
    def test_iso_with_zone_converted_to_naive_utc(self):
        assert parse_timestamp("2026-03-01T12:00:00+02:00") == datetime(2026, 3, 1, 10, 0)
        assert parse_timestamp("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0)

    def test_day_first_formats(self):
        assert parse_timestamp("01/03/2026") == datetime(2026, 3, 1)
        assert parse_timestamp("01/03/2026 14:30") == datetime(2026, 3, 1, 14, 30)

    def test_unparseable_raises(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")
        with pytest.raises(ValueError):
            parse_timestamp("")


def test_ingestion_summary_success_tracks_errors():
    summary = IngestionSummary(processed=2)
    assert summary.success is True
    summary.errors.append("Row 2: missing tracking number or status")
    assert summary.complete().to_dict() == {
        "success": False,
        "processed": 2,
        "skipped": 0,
        "unmapped": 0,
        "errors": ["Row 2: missing tracking number or status"],
    }
    assert summary.completed_at is not None
