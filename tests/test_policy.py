from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime, time, timedelta
import unittest

from muadhin.config import GlobalConfig, PerPrayerConfig
from muadhin.models import DailySchedule, FiredKey, PrayerName
from muadhin.policy import evaluate, evaluate_reminder, next_prayer

DAY = date(2025, 3, 10)


def _at(hour: int, minute: int, second: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, time(hour, minute, second))


def _schedule(day: date = DAY) -> DailySchedule:
    return DailySchedule.from_times(
        day,
        {
            PrayerName.FAJR: time(4, 45),
            PrayerName.SUNRISE: time(6, 5),
            PrayerName.DHUHR: time(12, 10),
            PrayerName.ASR: time(15, 30),
            PrayerName.MAGHRIB: time(18, 2),
            PrayerName.ISHA: time(19, 20),
        },
    )


class EvaluateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = GlobalConfig()
        self.schedule = _schedule()

    def test_fajr_fires_once_then_stays_quiet(self) -> None:
        decision = evaluate(_at(4, 45, 3), self.schedule, self.config, set())

        self.assertIsNotNone(decision)
        assert decision is not None
        self.assertEqual(decision.prayer, PrayerName.FAJR)
        self.assertTrue(decision.do_notify)
        self.assertTrue(decision.do_play_audio)
        self.assertEqual(decision.audio_ref, "Mishary_Al-Afasy.mp3")
        self.assertEqual(decision.scheduled_at, _at(4, 45))

        fired = {FiredKey(DAY, PrayerName.FAJR)}
        self.assertIsNone(evaluate(_at(4, 45, 10), self.schedule, self.config, fired))

    def test_fired_prayer_is_never_selected_again_that_day(self) -> None:
        fired = {FiredKey(DAY, PrayerName.FAJR)}
        for offset in range(0, 25):
            now = _at(4, 45) + timedelta(seconds=offset)
            self.assertIsNone(evaluate(now, self.schedule, self.config, fired))

    def test_fire_on_previous_day_does_not_block_today(self) -> None:
        fired = {FiredKey(DAY - timedelta(days=1), PrayerName.FAJR)}
        decision = evaluate(_at(4, 45, 1), self.schedule, self.config, fired)
        self.assertIsNotNone(decision)

    def test_never_fires_before_scheduled_instant(self) -> None:
        self.assertIsNone(evaluate(_at(4, 44, 59), self.schedule, self.config, set()))

    def test_window_upper_bound_is_inclusive(self) -> None:
        config = replace(self.config, trigger_window_seconds=20)
        on_edge = evaluate(_at(12, 10, 20), self.schedule, config, set())
        missed = evaluate(_at(12, 10, 21), self.schedule, config, set())

        self.assertIsNotNone(on_edge)
        assert on_edge is not None
        self.assertEqual(on_edge.prayer, PrayerName.DHUHR)
        self.assertIsNone(missed)

    def test_window_has_a_three_second_floor(self) -> None:
        config = replace(self.config, trigger_window_seconds=0)
        self.assertIsNotNone(evaluate(_at(12, 10, 3), self.schedule, config, set()))
        self.assertIsNone(evaluate(_at(12, 10, 4), self.schedule, config, set()))

    def test_overlapping_windows_yield_only_the_earliest(self) -> None:
        schedule = {
            PrayerName.ASR: _at(12, 10, 5),
            PrayerName.DHUHR: _at(12, 10),
        }
        decision = evaluate(_at(12, 10, 6), schedule, self.config, set())
        assert decision is not None
        self.assertEqual(decision.prayer, PrayerName.DHUHR)

        fired = {FiredKey(DAY, PrayerName.DHUHR)}
        follow_up = evaluate(_at(12, 10, 7), schedule, self.config, fired)
        assert follow_up is not None
        self.assertEqual(follow_up.prayer, PrayerName.ASR)

    def test_stale_entries_are_rejected(self) -> None:
        yesterday = DAY - timedelta(days=1)
        schedule = {PrayerName.ISHA: _at(19, 20, day=yesterday)}
        self.assertIsNone(evaluate(_at(19, 20, 5), schedule, self.config, set()))

    def test_stale_schedule_object_is_rejected(self) -> None:
        stale = _schedule(DAY - timedelta(days=1))
        self.assertIsNone(evaluate(_at(4, 45, 1), stale, self.config, set()))

    def test_sunrise_never_plays_audio(self) -> None:
        loud = self.config.with_prayer(
            PrayerName.SUNRISE, PerPrayerConfig(enabled=True, audio_ref="Mishary_Al-Afasy.mp3")
        )
        for audio_on in (True, False):
            for notify_on in (True, False):
                config = replace(loud, audio_master_enabled=audio_on, notifications_master_enabled=notify_on)
                decision = evaluate(_at(6, 5, 1), self.schedule, config, set())
                if config.is_silent:
                    self.assertIsNone(decision)
                    continue
                assert decision is not None
                self.assertEqual(decision.prayer, PrayerName.SUNRISE)
                self.assertFalse(decision.do_play_audio)
                self.assertIsNone(decision.audio_ref)
                self.assertEqual(decision.do_notify, notify_on)

    def test_quiet_mode_short_circuits(self) -> None:
        config = replace(self.config, quiet_mode=True)
        self.assertIsNone(evaluate(_at(4, 45, 1), self.schedule, config, set()))

    def test_both_masters_off_short_circuits(self) -> None:
        config = replace(self.config, audio_master_enabled=False, notifications_master_enabled=False)
        self.assertIsNone(evaluate(_at(4, 45, 1), self.schedule, config, set()))

    def test_audio_master_off_keeps_notification(self) -> None:
        config = replace(self.config, audio_master_enabled=False)
        decision = evaluate(_at(4, 45, 1), self.schedule, config, set())
        assert decision is not None
        self.assertTrue(decision.do_notify)
        self.assertFalse(decision.do_play_audio)

    def test_notifications_off_keeps_audio(self) -> None:
        config = replace(self.config, notifications_master_enabled=False)
        decision = evaluate(_at(4, 45, 1), self.schedule, config, set())
        assert decision is not None
        self.assertFalse(decision.do_notify)
        self.assertTrue(decision.do_play_audio)

    def test_blank_audio_ref_disables_playback(self) -> None:
        config = self.config.with_prayer(PrayerName.ASR, PerPrayerConfig(enabled=True, audio_ref="   "))
        decision = evaluate(_at(15, 30, 2), self.schedule, config, set())
        assert decision is not None
        self.assertFalse(decision.do_play_audio)

    def test_unobservable_decision_is_still_returned(self) -> None:
        config = replace(
            self.config.with_prayer(PrayerName.ASR, PerPrayerConfig(enabled=False, audio_ref="a.mp3")),
            notifications_master_enabled=False,
        )
        decision = evaluate(_at(15, 30, 2), self.schedule, config, set())
        assert decision is not None
        self.assertEqual(decision.prayer, PrayerName.ASR)
        self.assertFalse(decision.is_observable)

    def test_missing_prayer_configuration_means_no_audio(self) -> None:
        config = replace(self.config, per_prayer={})
        decision = evaluate(_at(15, 30, 2), self.schedule, config, set())
        assert decision is not None
        self.assertFalse(decision.do_play_audio)
        self.assertTrue(decision.do_notify)

    def test_empty_or_missing_schedule_yields_nothing(self) -> None:
        self.assertIsNone(evaluate(_at(4, 45, 1), DailySchedule(DAY, {}), self.config, set()))
        self.assertIsNone(evaluate(_at(4, 45, 1), None, self.config, set()))
        self.assertIsNone(evaluate(_at(4, 45, 1), {}, self.config, set()))


class EvaluateReminderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.config = replace(GlobalConfig(), reminder_minutes_before=10)
        self.schedule = _schedule()

    def test_reminder_inside_lead_time(self) -> None:
        reminder = evaluate_reminder(_at(12, 0), self.schedule, self.config, set())
        assert reminder is not None
        self.assertEqual(reminder.prayer, PrayerName.DHUHR)
        self.assertEqual(reminder.remaining, timedelta(minutes=10))

    def test_no_reminder_at_or_after_the_prayer(self) -> None:
        self.assertIsNone(evaluate_reminder(_at(12, 10), self.schedule, self.config, set()))
        self.assertIsNone(evaluate_reminder(_at(11, 59, 59), self.schedule, self.config, set()))

    def test_reminder_is_deduplicated(self) -> None:
        reminded = {FiredKey(DAY, PrayerName.DHUHR)}
        self.assertIsNone(evaluate_reminder(_at(12, 5), self.schedule, self.config, reminded))

    def test_reminders_follow_notification_switches(self) -> None:
        for config in (
            replace(self.config, reminder_minutes_before=0),
            replace(self.config, notifications_master_enabled=False),
            replace(self.config, quiet_mode=True),
        ):
            self.assertIsNone(evaluate_reminder(_at(12, 5), self.schedule, config, set()))


class NextPrayerTests(unittest.TestCase):
    def test_mid_day_counts_down_to_asr(self) -> None:
        upcoming = next_prayer(_at(14, 25), _schedule())
        assert upcoming is not None
        self.assertEqual(upcoming.prayer, PrayerName.ASR)
        self.assertEqual(upcoming.scheduled_at, _at(15, 30))
        self.assertEqual(upcoming.remaining, timedelta(hours=1, minutes=5))

    def test_prayer_at_exactly_now_is_not_next(self) -> None:
        upcoming = next_prayer(_at(12, 10), _schedule())
        assert upcoming is not None
        self.assertEqual(upcoming.prayer, PrayerName.ASR)

    def test_after_isha_wraps_to_tomorrows_fajr(self) -> None:
        upcoming = next_prayer(_at(22, 0), _schedule())
        assert upcoming is not None
        self.assertEqual(upcoming.prayer, PrayerName.FAJR)
        self.assertEqual(upcoming.scheduled_at, _at(4, 45, day=DAY + timedelta(days=1)))
        self.assertEqual(upcoming.remaining, timedelta(hours=6, minutes=45))

    def test_no_schedule_means_no_answer(self) -> None:
        self.assertIsNone(next_prayer(_at(9, 0), None))
        self.assertIsNone(next_prayer(_at(22, 0), {PrayerName.ISHA: _at(19, 20)}))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
