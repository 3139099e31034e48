from autopost_cron.jobs.schedule import TriggerSchedule, next_backoff


def test_everything_is_due_on_first_tick() -> None:
    schedule = TriggerSchedule(intervals={"dispatch": 60.0, "monitor": 900.0})

    assert schedule.due(100.0) == ["dispatch", "monitor"]
    assert schedule.next_wait(100.0) == 0.0


def test_triggers_fire_on_their_own_interval() -> None:
    schedule = TriggerSchedule(intervals={"dispatch": 60.0, "monitor": 900.0})
    schedule.mark("dispatch", 0.0)
    schedule.mark("monitor", 0.0)

    assert schedule.due(59.0) == []
    assert schedule.next_wait(59.0) == 1.0
    assert schedule.due(60.0) == ["dispatch"]
    assert schedule.due(900.0) == ["dispatch", "monitor"]


def test_backoff_grows_and_is_capped() -> None:
    first = next_backoff(0.0, base=60.0, ceiling=300.0, jitter=0.0)
    second = next_backoff(first, base=60.0, ceiling=300.0, jitter=0.0)
    third = next_backoff(second, base=60.0, ceiling=300.0, jitter=0.5)

    assert first == 120.0
    assert second == 240.0
    assert third == 300.0
