from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from famstars.periods import period_end, period_start

UTC = ZoneInfo("UTC")


def test_period_starts():
    now = datetime(2024, 5, 15, 13, 45, tzinfo=timezone.utc)  # Wednesday
    assert period_start("daily", now, UTC) == datetime(2024, 5, 15, tzinfo=UTC)
    assert period_start("weekly", now, UTC, "sun") == datetime(2024, 5, 12, tzinfo=UTC)
    assert period_start("weekly", now, UTC, "mon") == datetime(2024, 5, 13, tzinfo=UTC)
    assert period_start("monthly", now, UTC) == datetime(2024, 5, 1, tzinfo=UTC)
    assert period_start("yearly", now, UTC) == datetime(2024, 1, 1, tzinfo=UTC)


def test_period_ends_roll_over():
    now = datetime(2024, 12, 31, 23, 0, tzinfo=timezone.utc)
    assert period_end("daily", now, UTC) == datetime(2025, 1, 1, tzinfo=UTC)
    assert period_end("monthly", now, UTC) == datetime(2025, 1, 1, tzinfo=UTC)
    assert period_end("yearly", now, UTC) == datetime(2025, 1, 1, tzinfo=UTC)


def test_local_timezone_boundary():
    tz = ZoneInfo("America/New_York")
    now = datetime(2024, 3, 1, 3, 0, tzinfo=timezone.utc)  # still Feb 29 in New York
    assert period_start("monthly", now, tz) == datetime(2024, 2, 1, tzinfo=tz)
    assert period_end("daily", now, tz) == datetime(2024, 3, 1, tzinfo=tz)
