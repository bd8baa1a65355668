from datetime import datetime, timedelta, timezone

from streamwatch.liveness import LivenessTracker

T0 = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def test_first_sighting_is_provisionally_inactive():
    tracker = LivenessTracker(inactivity_threshold_seconds=300)
    assert tracker.observe("s1", 100.0, _at(0)) is False
    assert "s1" in tracker


def test_advancing_position_is_active():
    tracker = LivenessTracker(inactivity_threshold_seconds=300)
    tracker.observe("s1", 100.0, _at(0))
    assert tracker.observe("s1", 130.0, _at(30)) is True


def test_stalled_position_stays_active_within_threshold():
    tracker = LivenessTracker(inactivity_threshold_seconds=300)
    tracker.observe("s1", 100.0, _at(0))
    tracker.observe("s1", 130.0, _at(30))

    assert tracker.observe("s1", 130.0, _at(300)) is True
    assert tracker.observe("s1", 130.0, _at(330)) is False


def test_push_event_vouches_for_first_sighting():
    tracker = LivenessTracker(inactivity_threshold_seconds=300)
    tracker.mark_event("s1", _at(0), position=10)

    assert tracker.observe("s1", 10.0, _at(5)) is True


def test_event_keeps_session_active():
    tracker = LivenessTracker(inactivity_threshold_seconds=300)
    tracker.observe("s1", 100.0, _at(0))
    tracker.mark_event("s1", _at(200))

    assert tracker.observe("s1", 100.0, _at(400)) is True
    assert tracker.observe("s1", 100.0, _at(600)) is False


def test_stop_event_clears_activity():
    tracker = LivenessTracker(inactivity_threshold_seconds=300)
    tracker.observe("s1", 100.0, _at(0))
    tracker.observe("s1", 130.0, _at(30))
    tracker.mark_stopped("s1")

    assert tracker.observe("s1", 130.0, _at(40)) is False


def test_prune_returns_forgotten_keys():
    tracker = LivenessTracker()
    tracker.observe("s1", 1.0, _at(0))
    tracker.observe("s2", 1.0, _at(0))
    tracker.mark_event("s3", _at(0))

    assert sorted(tracker.prune(["s2"])) == ["s1", "s3"]
    assert "s1" not in tracker
    assert "s2" in tracker
    # A pruned event no longer vouches for a later sighting.
    assert tracker.observe("s3", 1.0, _at(10)) is False
