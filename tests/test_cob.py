from builders import CARBS, MIN, PROFILE, READINGS, T0
from oref_engine.core.cob import calculate_meal
from oref_engine.core.deviations import bucket_glucose
from oref_engine.structs import GlucoseReading

FLAT_HOUR = READINGS([110] * 13)


def test_no_carbs():
    meal = calculate_meal(PROFILE(), FLAT_HOUR, [], T0)
    assert meal.carbs == 0
    assert meal.meal_cob == 0


def test_recent_meal_partially_absorbed():
    """Flat BG still absorbs at least min_5m_carbimpact per interval."""
    meal = calculate_meal(PROFILE(), FLAT_HOUR, [CARBS(30, 30)], T0)
    assert meal.carbs == 30
    assert 0 < meal.meal_cob < 30
    assert meal.last_carb_time == T0 - 30 * 60_000


def test_faster_absorption_when_bg_rises():
    rising = READINGS([200 - 10 * i for i in range(13)])
    slow = calculate_meal(PROFILE(), FLAT_HOUR, [CARBS(45, 40)], T0)
    fast = calculate_meal(PROFILE(), rising, [CARBS(45, 40)], T0)
    assert fast.meal_cob < slow.meal_cob


def test_cob_never_negative():
    readings = READINGS([110] * 40)
    meal = calculate_meal(PROFILE(), readings, [CARBS(180, 5)], T0)
    assert meal.meal_cob == 0


def test_cob_capped_at_max_cob():
    meal = calculate_meal(PROFILE(max_cob=60), FLAT_HOUR, [CARBS(5, 200)], T0)
    assert meal.meal_cob <= 60


def test_no_glucose_means_no_cob():
    meal = calculate_meal(PROFILE(), [], [CARBS(30, 30)], T0)
    assert meal.carbs == 30
    assert meal.meal_cob == 0


def test_carbs_outside_window_ignored():
    meal = calculate_meal(PROFILE(max_meal_absorption_time=6), FLAT_HOUR, [CARBS(7 * 60, 50)], T0)
    assert meal.carbs == 0


def test_deviation_stats_follow_rising_bg():
    rising = READINGS([150 - 3 * i for i in range(13)])
    meal = calculate_meal(PROFILE(), rising, [], T0)
    assert meal.current_deviation > 0
    assert meal.all_deviations


def test_bucketing_interpolates_gaps():
    readings = [GlucoseReading(T0, 120), GlucoseReading(T0 - 20 * 60_000, 100)]
    buckets = bucket_glucose(readings)
    assert [b.timestamp for b in buckets] == [T0 - i * 5 * 60_000 for i in range(5)]
    assert buckets[-1].glucose == 100
    assert 100 < buckets[2].glucose < 120


def test_cob_never_rises_after_single_entry():
    """Flat BG through three hours after one meal: absorption only ever lowers COB."""
    readings = READINGS([110] * 50, now=T0 + 180 * MIN)
    carbs = [CARBS(0, 40)]
    cobs = []
    for m in range(5, 185, 5):
        now = T0 + m * MIN
        seen = [r for r in readings if r.timestamp <= now]
        cobs.append(calculate_meal(PROFILE(), seen, carbs, now).meal_cob)
    assert all(later <= earlier for earlier, later in zip(cobs, cobs[1:]))
    assert cobs[0] > cobs[-1]


def test_same_history_same_meal():
    rising = READINGS([150 - 3 * i for i in range(13)])
    carbs = [CARBS(30, 30)]
    assert calculate_meal(PROFILE(), rising, carbs, T0) == calculate_meal(PROFILE(), rising, carbs, T0)
