"""
Startup configuration and input parsing tests.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from chowline import create_app, validate_config
from chowline.config import DEFAULT_SECRET_KEY
from chowline.errors import ConfigurationError, ValidationError
from chowline.time_utils import as_utc_naive, local_today, parse_iso_datetime, to_utc_z
from chowline.validation import coerce_int, parse_commission_rate, parse_date_field, validate_phone


PRODUCTION = {
    "APP_ENV": "production",
    "SECRET_KEY": "a-real-secret",
    "CRON_SECRET": "a-real-cron-secret",
    "RATE_LIMIT_ENABLED": True,
}

NG_PHONE = r"^(\+234|0)[789][01]\d{8}$"


class TestProductionConfig:

    def test_safe_config_passes(self):
        validate_config(dict(PRODUCTION))

    @pytest.mark.parametrize(
        "override",
        [
            {"SECRET_KEY": DEFAULT_SECRET_KEY},
            {"SECRET_KEY": ""},
            {"CRON_SECRET": None},
            {"RATE_LIMIT_ENABLED": False},
        ],
    )
    def test_unsafe_config_refused(self, override):
        with pytest.raises(ConfigurationError):
            validate_config({**PRODUCTION, **override})

    def test_development_is_lenient(self):
        validate_config({"APP_ENV": "development", "SECRET_KEY": DEFAULT_SECRET_KEY})

    def test_create_app_refuses_default_secret(self):
        with pytest.raises(ConfigurationError):
            create_app({"APP_ENV": "production", "SECRET_KEY": DEFAULT_SECRET_KEY})


class TestParsing:

    @pytest.mark.parametrize("value,expected", [("10", 1000), ("7.5", 750), (12.25, 1225), (0, 0), ("100", 10000)])
    def test_commission_rate(self, value, expected):
        assert parse_commission_rate(value) == expected

    @pytest.mark.parametrize("value", ["7.555", 101, -1, "ten", None, True, "NaN"])
    def test_commission_rate_rejected(self, value):
        with pytest.raises(ValidationError) as exc:
            parse_commission_rate(value)
        assert exc.value.field == "commission_rate"

    @pytest.mark.parametrize("value", ["1e3", "12.5", 1.0, True, "", None])
    def test_coerce_int_strict(self, value):
        with pytest.raises(ValidationError):
            coerce_int(value, "quantity")

    def test_coerce_int(self):
        assert coerce_int(" 42 ", "quantity") == 42
        assert coerce_int(7, "quantity") == 7

    def test_date_field(self):
        assert parse_date_field("2026-01-31", "period_start") == date(2026, 1, 31)
        with pytest.raises(ValidationError) as exc:
            parse_date_field("2026-02-30", "period_end")
        assert exc.value.field == "period_end"

    @pytest.mark.parametrize("value", ["08031234567", "+2348031234567", "0903 123 4567"])
    def test_phone_accepted(self, value):
        assert " " not in validate_phone(value, NG_PHONE)

    @pytest.mark.parametrize("value", ["12345", "06031234567", "0803123456", ""])
    def test_phone_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_phone(value, NG_PHONE)


class TestTime:

    def test_local_today_crosses_midnight(self):
        # 23:30 UTC is already tomorrow in Lagos (UTC+1)
        assert local_today("Africa/Lagos", datetime(2026, 3, 1, 23, 30)) == date(2026, 3, 2)

    def test_iso_round_trip(self):
        parsed = parse_iso_datetime("2026-03-01T10:00:00+01:00")
        assert parsed == datetime(2026, 3, 1, 9, 0)
        assert to_utc_z(parsed) == "2026-03-01T09:00:00Z"

    def test_stored_timestamps_normalized(self):
        aware = datetime(2026, 3, 1, 10, 0, tzinfo=timezone(timedelta(hours=1)))
        assert as_utc_naive(aware) == datetime(2026, 3, 1, 9, 0)
        assert as_utc_naive(datetime(2026, 3, 1, 9, 0)) == datetime(2026, 3, 1, 9, 0)
        assert as_utc_naive(None) is None


class TestHealth:

    def test_health(self, client):
        resp = client.get("/api/system/health")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "ok"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["audit_export"] == {"status": "never_run", "last_export_date": None}
