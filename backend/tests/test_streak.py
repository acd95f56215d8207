from app.engine.days import shift_day_key
from app.engine.streak import current_streak, activity_day_keys

TODAY = "2026-03-10"
YESTERDAY = shift_day_key(TODAY, -1)
TWO_DAYS_AGO = shift_day_key(TODAY, -2)
THREE_DAYS_AGO = shift_day_key(TODAY, -3)


def checklist_entry(day_key: str, done: bool = True) -> dict:
    return {"date": f"{day_key}T09:00:00+00:00", "tasks": [{"title": "walk", "done": done}]}


def habit(user_id: str, *days: str, challenge_type: str = "habit") -> dict:
    return {
        "id": f"ch-{len(days)}",
        "challenge_type": challenge_type,
        "participants": [{"user_id": user_id, "completed_days": list(days)}],
    }


class TestCurrentStreak:
    def test_three_consecutive_checklist_days(self):
        checklists = [checklist_entry(d) for d in (TODAY, YESTERDAY, TWO_DAYS_AGO)]
        assert current_streak(checklists, [], "u1", TODAY) == 3

    def test_gap_stops_the_walk(self):
        checklists = [checklist_entry(d) for d in (TODAY, YESTERDAY, THREE_DAYS_AGO)]
        assert current_streak(checklists, [], "u1", TODAY) == 2

    def test_nothing_today_is_zero(self):
        checklists = [checklist_entry(YESTERDAY)]
        assert current_streak(checklists, [], "u1", TODAY) == 0

    def test_checklist_without_done_task_does_not_count(self):
        checklists = [checklist_entry(TODAY, done=False), checklist_entry(YESTERDAY)]
        assert current_streak(checklists, [], "u1", TODAY) == 0

    def test_habit_and_checklist_combine(self):
        assert current_streak([checklist_entry(YESTERDAY)], [habit("u1", TODAY)], "u1", TODAY) == 2

    def test_habit_days_with_time_component(self):
        challenge = habit("u1", f"{TODAY}T00:00:00.000Z", f"{YESTERDAY}T00:00:00.000Z")
        assert current_streak([], [challenge], "u1", TODAY) == 2

    def test_other_participants_days_ignored(self):
        assert current_streak([], [habit("someone-else", TODAY)], "u1", TODAY) == 0

    def test_result_challenges_ignored(self):
        assert current_streak([], [habit("u1", TODAY, challenge_type="result")], "u1", TODAY) == 0

    def test_max_lookback_caps_the_walk(self):
        days = [shift_day_key(TODAY, -i) for i in range(20)]
        assert current_streak([], [habit("u1", *days)], "u1", TODAY, max_lookback=7) == 7

    def test_client_frame_applies_to_checklists(self):
        # 11:00 UTC on the 9th is already the 10th in UTC+13
        checklists = [{"date": "2026-03-09T11:00:00+00:00", "tasks": [{"title": "t", "done": True}]}]
        assert current_streak(checklists, [], "u1", TODAY, tz_offset_minutes=-780) == 1
        assert current_streak(checklists, [], "u1", TODAY) == 0

    def test_pure_function(self):
        checklists = [checklist_entry(TODAY)]
        challenges = [habit("u1", YESTERDAY)]
        assert current_streak(checklists, challenges, "u1", TODAY) == 2
        assert current_streak(checklists, challenges, "u1", TODAY) == 2
        assert checklists == [checklist_entry(TODAY)]

    def test_walk_stops_at_first_calendar_day(self):
        assert current_streak([], [habit("u1", "0001-01-01")], "u1", "0001-01-01") == 1


class TestActivityDayKeys:
    def test_union_of_sources(self):
        days = activity_day_keys([checklist_entry(TODAY)], [habit("u1", TWO_DAYS_AGO)], "u1")
        assert days == {TODAY, TWO_DAYS_AGO}
