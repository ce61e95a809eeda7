import unittest
from datetime import date, time

from studysync.models import RecurrenceRule, Session, SessionValidationError
from studysync.recurrence import expand_master, expand_sessions, format_rrule, occurrence_dates, parse_rrule


def weekly_master(**recurrence: object) -> Session:
    payload = {
        "rule": {"frequency": "WEEKLY", "by_weekday": ["MO", "WE"], "until": "2026-03-18"},
        "series_start": "2026-03-02",
    }
    payload.update(recurrence)
    return Session.from_dict(
        {
            "id": "algebra",
            "course_id": "math",
            "start_date": "2026-03-02",
            "start_time": "18:00",
            "end_time": "19:30",
            "notes": "weekly review",
            "recurrence": payload,
        }
    )


class RRuleTextTests(unittest.TestCase):
    def test_parse_rrule(self) -> None:
        rule = parse_rrule("RRULE:FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,1WE;UNTIL=20260601T000000Z")

        self.assertEqual(rule.frequency, "WEEKLY")
        self.assertEqual(rule.interval, 2)
        self.assertEqual(rule.by_weekday, ("MO", "WE"))
        self.assertEqual(rule.until, date(2026, 6, 1))
        self.assertIsNone(rule.count)

    def test_format_rrule(self) -> None:
        rule = RecurrenceRule(frequency="DAILY", interval=3, count=5)
        self.assertEqual(format_rrule(rule), "FREQ=DAILY;INTERVAL=3;COUNT=5")

    def test_unsupported_rule_is_rejected(self) -> None:
        with self.assertRaises(SessionValidationError):
            parse_rrule("FREQ=YEARLY")
        with self.assertRaises(SessionValidationError):
            parse_rrule("FREQ=WEEKLY;BYDAY")


class ExpansionTests(unittest.TestCase):
    def test_occurrences_within_window(self) -> None:
        master = weekly_master()

        dates = occurrence_dates(master, date(2026, 3, 1), date(2026, 3, 31))

        self.assertEqual(
            dates,
            [date(2026, 3, 2), date(2026, 3, 4), date(2026, 3, 9), date(2026, 3, 11), date(2026, 3, 16), date(2026, 3, 18)],
        )

    def test_instances_carry_master_fields_and_synthetic_ids(self) -> None:
        instances = expand_master(weekly_master(), date(2026, 3, 4), date(2026, 3, 4))

        self.assertEqual(len(instances), 1)
        instance = instances[0]
        self.assertEqual(instance.id, "algebra::2026-03-04")
        self.assertEqual(instance.master_id, "algebra")
        self.assertEqual(instance.course_id, "math")
        self.assertEqual(instance.notes, "weekly review")
        self.assertEqual(instance.duration_minutes, 90)
        self.assertIsNone(instance.recurrence)

    def test_excluded_and_cancelled_dates_are_skipped(self) -> None:
        master = weekly_master(
            excluded_dates=["2026-03-04"],
            overrides=[{"date": "2026-03-09", "cancelled": True}],
        )

        instances = expand_master(master, date(2026, 3, 1), date(2026, 3, 10))

        self.assertEqual([item.start_date for item in instances], [date(2026, 3, 2)])

    def test_time_shift_override_only_in_view(self) -> None:
        master = weekly_master(overrides=[{"date": "2026-03-04", "start_time": "20:00", "end_time": "21:00"}])

        rule_only = expand_master(master, date(2026, 3, 4), date(2026, 3, 4))
        shifted = expand_master(master, date(2026, 3, 4), date(2026, 3, 4), include_shifted=True)

        self.assertEqual(rule_only, [])
        self.assertEqual(shifted[0].start_time, time(20, 0))
        self.assertEqual(shifted[0].duration_minutes, 60)

    def test_completion_override_marks_instance(self) -> None:
        master = weekly_master(overrides=[{"date": "2026-03-02", "attended": True, "completion_percentage": 80}])

        first = expand_master(master, date(2026, 3, 2), date(2026, 3, 2))[0]

        self.assertTrue(first.attended)
        self.assertEqual(first.completion_percentage, 80)
        self.assertFalse(master.attended)

    def test_overnight_instance_reaching_into_window_is_returned(self) -> None:
        master = Session.from_dict(
            {
                "id": "late",
                "start_date": "2026-03-02",
                "start_time": "22:00",
                "end_date": "2026-03-03",
                "end_time": "02:00",
                "recurrence": {"rule": {"frequency": "WEEKLY", "count": 4}, "series_start": "2026-03-02"},
            }
        )

        instances = expand_master(master, date(2026, 3, 10), date(2026, 3, 12))

        self.assertEqual([item.id for item in instances], ["late::2026-03-09"])
        self.assertEqual(instances[0].end_date, date(2026, 3, 10))
        self.assertEqual(instances[0].duration_minutes, 240)

    def test_expansion_is_repeatable(self) -> None:
        master = weekly_master(
            excluded_dates=["2026-03-04"],
            overrides=[
                {"date": "2026-03-09", "start_time": "20:00", "end_time": "21:00"},
                {"date": "2026-03-11", "attended": True, "completion_percentage": 40},
            ],
        )

        first = expand_master(master, date(2026, 3, 1), date(2026, 3, 31), include_shifted=True)
        second = expand_master(master, date(2026, 3, 1), date(2026, 3, 31), include_shifted=True)

        self.assertEqual([item.to_dict() for item in first], [item.to_dict() for item in second])
        self.assertEqual(len(first), 5)

    def test_non_master_is_rejected(self) -> None:
        single = Session.from_dict({"id": "s", "start_date": "2026-03-02", "start_time": "10:00", "end_time": "11:00"})
        with self.assertRaises(ValueError):
            expand_master(single, date(2026, 3, 1), date(2026, 3, 31))

    def test_expand_sessions_mixes_singles_and_series(self) -> None:
        single = Session.from_dict(
            {"id": "extra", "start_date": "2026-03-03", "start_time": "09:00", "end_time": "10:00"}
        )
        outside = Session.from_dict(
            {"id": "later", "start_date": "2026-04-03", "start_time": "09:00", "end_time": "10:00"}
        )

        view = expand_sessions([weekly_master(), single, outside], date(2026, 3, 2), date(2026, 3, 4))

        self.assertEqual([item.id for item in view], ["algebra::2026-03-02", "extra", "algebra::2026-03-04"])


if __name__ == "__main__":
    unittest.main()
