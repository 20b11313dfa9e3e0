"""
Tests for notification preference resolution.
"""
from datetime import datetime, time

import pytest

from app.models.notification import EmailFrequency, NotificationChannel, NotificationPreference
from app.services.notification_preferences import (
    PreferenceSnapshot,
    enabled_channels,
    is_dnd_active,
    is_event_channel_enabled,
    is_in_quiet_hours,
    parse_clock,
    should_queue_for_digest,
    should_send_digest_now,
)


class TestQuietHours:

    @pytest.mark.parametrize("now, expected", [
        (datetime(2026, 1, 15, 23, 30), True),
        (datetime(2026, 1, 15, 22, 0), True),
        (datetime(2026, 1, 16, 7, 59), True),
        (datetime(2026, 1, 16, 8, 0), False),
        (datetime(2026, 1, 15, 12, 0), False),
    ])
    def test_span_across_midnight(self, now, expected):
        snapshot = PreferenceSnapshot(quiet_hours_enabled=True, quiet_hours_start="22:00", quiet_hours_end="08:00")
        assert is_in_quiet_hours(snapshot, now) is expected

    def test_same_day_span(self):
        snapshot = PreferenceSnapshot(quiet_hours_enabled=True, quiet_hours_start="12:00", quiet_hours_end="13:00")
        assert is_in_quiet_hours(snapshot, datetime(2026, 1, 15, 12, 30))
        assert not is_in_quiet_hours(snapshot, datetime(2026, 1, 15, 13, 0))

    def test_evaluated_in_recipient_timezone(self):
        snapshot = PreferenceSnapshot(
            quiet_hours_enabled=True,
            quiet_hours_start="22:00",
            quiet_hours_end="08:00",
            timezone="America/New_York"
        )
        # 03:00 UTC is 22:00 in New York during January
        assert is_in_quiet_hours(snapshot, datetime(2026, 1, 15, 3, 0))
        assert not is_in_quiet_hours(snapshot, datetime(2026, 1, 15, 14, 0))

    def test_empty_span_and_disabled(self):
        now = datetime(2026, 1, 15, 23, 0)
        assert not is_in_quiet_hours(
            PreferenceSnapshot(quiet_hours_enabled=True, quiet_hours_start="09:00", quiet_hours_end="09:00"), now
        )
        assert not is_in_quiet_hours(PreferenceSnapshot(), now)


class TestChannelResolution:

    NOW = datetime(2026, 1, 15, 12, 0)

    def test_defaults(self):
        snapshot = PreferenceSnapshot()
        assert enabled_channels(snapshot, "ticket_assigned", self.NOW) == [
            NotificationChannel.EMAIL, NotificationChannel.IN_APP
        ]
        assert enabled_channels(snapshot, "ticket_updated", self.NOW) == [NotificationChannel.IN_APP]

    def test_unlisted_event_follows_channel_flags(self):
        snapshot = PreferenceSnapshot(push_enabled=True)
        assert enabled_channels(snapshot, "report_ready", self.NOW) == [
            NotificationChannel.EMAIL, NotificationChannel.IN_APP, NotificationChannel.PUSH
        ]

    def test_global_flag_overrides_event_matrix(self):
        snapshot = PreferenceSnapshot(email_enabled=False)
        assert not is_event_channel_enabled(snapshot, "ticket_assigned", NotificationChannel.EMAIL, self.NOW)

    def test_quiet_hours_do_not_silence_in_app(self):
        snapshot = PreferenceSnapshot(quiet_hours_enabled=True, quiet_hours_start="00:00", quiet_hours_end="23:59")
        assert is_event_channel_enabled(snapshot, "ticket_assigned", NotificationChannel.IN_APP, self.NOW)
        assert not is_event_channel_enabled(snapshot, "ticket_assigned", NotificationChannel.EMAIL, self.NOW)

    def test_dnd_blocks_everything_until_expiry(self):
        snapshot = PreferenceSnapshot(dnd_enabled=True, dnd_until=datetime(2026, 1, 15, 18, 0))

        assert is_dnd_active(snapshot, self.NOW)
        assert enabled_channels(snapshot, "ticket_assigned", self.NOW) == []
        assert not is_dnd_active(snapshot, datetime(2026, 1, 15, 18, 0))

    def test_indefinite_dnd(self):
        assert is_dnd_active(PreferenceSnapshot(dnd_enabled=True), self.NOW)


class TestDigest:

    def test_queue_only_batched_email(self):
        batched = PreferenceSnapshot(digest_enabled=True, email_frequency=EmailFrequency.DAILY)
        immediate = PreferenceSnapshot(digest_enabled=True)

        assert should_queue_for_digest(batched, NotificationChannel.EMAIL)
        assert not should_queue_for_digest(batched, NotificationChannel.IN_APP)
        assert not should_queue_for_digest(immediate, NotificationChannel.EMAIL)

    @pytest.mark.parametrize("now, expected", [
        (datetime(2026, 1, 15, 8, 59), False),
        (datetime(2026, 1, 15, 9, 0), True),
        (datetime(2026, 1, 15, 9, 4), True),
        (datetime(2026, 1, 15, 9, 5), False),
    ])
    def test_window_after_digest_time(self, now, expected):
        snapshot = PreferenceSnapshot(digest_enabled=True, digest_time="09:00")
        assert should_send_digest_now(snapshot, now) is expected

    def test_digest_days_use_sunday_zero(self):
        # 2026-01-15 is a Thursday (4); 2026-01-18 is a Sunday (0)
        thursday = datetime(2026, 1, 15, 9, 1)
        sunday = datetime(2026, 1, 18, 9, 1)

        assert should_send_digest_now(PreferenceSnapshot(digest_enabled=True, digest_days=(4,)), thursday)
        assert not should_send_digest_now(PreferenceSnapshot(digest_enabled=True, digest_days=(1,)), thursday)
        assert should_send_digest_now(PreferenceSnapshot(digest_enabled=True, digest_days=(0,)), sunday)

    def test_digest_time_is_local(self):
        snapshot = PreferenceSnapshot(digest_enabled=True, digest_time="09:00", timezone="Asia/Tokyo")
        assert should_send_digest_now(snapshot, datetime(2026, 1, 15, 0, 2))
        assert not should_send_digest_now(snapshot, datetime(2026, 1, 15, 9, 2))

    def test_disabled_digest_never_fires(self):
        assert not should_send_digest_now(PreferenceSnapshot(), datetime(2026, 1, 15, 9, 0))


class TestSnapshot:

    def test_defaults_without_row(self):
        snapshot = PreferenceSnapshot.from_model(None)
        assert snapshot.email_enabled and snapshot.in_app_enabled
        assert not snapshot.push_enabled
        assert snapshot.events["ticket_resolved"]["email"] is True

    def test_from_row(self):
        row = NotificationPreference(
            notifiable_id="u-1",
            email_enabled=False,
            in_app_enabled=True,
            push_enabled=True,
            sms_enabled=False,
            events={"mention": {"push": False}},
            email_frequency=EmailFrequency.WEEKLY,
            digest_enabled=True,
            digest_time="18:30",
            digest_days=[1, 3],
            quiet_hours_enabled=False,
            timezone="Europe/Paris",
            dnd_enabled=False,
        )

        snapshot = PreferenceSnapshot.from_model(row)

        assert snapshot.email_frequency == EmailFrequency.WEEKLY
        assert snapshot.digest_days == (1, 3)
        assert snapshot.quiet_hours_start == "22:00"
        assert not is_event_channel_enabled(snapshot, "mention", NotificationChannel.PUSH, datetime(2026, 1, 15))

    def test_parse_clock_tolerates_seconds(self):
        assert parse_clock("09:30:00") == time(9, 30)
