from oncocheck.utils import clock


def test_stage_timer_accumulates_per_stage(monkeypatch):
    ticks = iter([1000, 1000, 1005, 1010, 1013, 1020, 1030, 1030])
    monkeypatch.setattr(clock, "monotonic_ms", lambda: next(ticks))
    timer = clock.StageTimer()
    with timer.stage("search"):
        pass
    with timer.stage("plan"):
        pass
    with timer.stage("search"):
        pass
    assert timer.as_dict() == {"search": 15, "plan": 3}
    assert timer.elapsed_ms() == 30


def test_now_iso_is_utc_millis():
    stamp = clock.now_iso()
    assert stamp.endswith("Z") and len(stamp) == len("2024-01-01T00:00:00.000Z")
